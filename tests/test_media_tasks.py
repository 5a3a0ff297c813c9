import allure
from click.testing import CliRunner

from media_tasks import __version__
from media_tasks.main import media_tasks

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("CLI Ops"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(media_tasks, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
