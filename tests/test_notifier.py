import threading
import time

import allure

from media_tasks.orchestrator.models import ErrorKind, JobChange, JobStatus
from media_tasks.orchestrator.notifier import ChangeNotifier

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Change Notifications"),
]


def _change(
    owner_id: str = "alice",
    status: JobStatus = JobStatus.PROCESSING,
    *,
    job_id: str = "job-1",
    version: int = 2,
) -> JobChange:
    return JobChange(
        job_id=job_id,
        owner_id=owner_id,
        status=status,
        version=version,
        progress=40,
    )


def test_publish_reaches_only_subscribers_of_owner() -> None:
    notifier = ChangeNotifier()
    alice: list[JobChange] = []
    bob: list[JobChange] = []
    notifier.subscribe("alice", alice.append)
    notifier.subscribe("bob", bob.append)

    delivered = notifier.publish(_change("alice"))

    assert delivered == 1
    assert alice == [_change("alice")]
    assert bob == []


def test_subscribe_all_receives_every_owner() -> None:
    notifier = ChangeNotifier()
    seen: list[str] = []
    notifier.subscribe_all(lambda change: seen.append(change.owner_id))

    notifier.publish(_change("alice", job_id="job-1"))
    notifier.publish(_change("bob", job_id="job-2"))

    assert seen == ["alice", "bob"]


def test_unsubscribe_stops_delivery_and_is_idempotent() -> None:
    notifier = ChangeNotifier()
    seen: list[JobChange] = []
    subscription = notifier.subscribe("alice", seen.append)
    assert notifier.subscriber_count("alice") == 1

    subscription.unsubscribe()
    subscription.unsubscribe()
    notifier.publish(_change("alice"))

    assert seen == []
    assert notifier.subscriber_count("alice") == 0


def test_failing_handler_does_not_affect_other_subscribers(caplog) -> None:
    notifier = ChangeNotifier()
    seen: list[JobChange] = []

    def _broken(_: JobChange) -> None:
        raise RuntimeError("handler exploded")

    notifier.subscribe("alice", _broken)
    notifier.subscribe("alice", seen.append)

    delivered = notifier.publish(_change("alice"))

    assert delivered == 1
    assert len(seen) == 1
    assert "Change handler failed" in caplog.text


def test_change_terminal_flag_and_error_fields() -> None:
    change = JobChange(
        job_id="job-1",
        owner_id="alice",
        status=JobStatus.FAILED,
        error_kind=ErrorKind.AUTH_CONFIG,
        error_message="API key not configured",
    )

    assert change.terminal is True
    assert _change().terminal is False


def test_concurrent_subscribe_and_publish() -> None:
    notifier = ChangeNotifier()
    counter: list[int] = []
    lock = threading.Lock()

    def _handler(_: JobChange) -> None:
        with lock:
            counter.append(1)

    subscriptions = [notifier.subscribe("alice", _handler) for _ in range(10)]
    threads = [
        threading.Thread(target=notifier.publish, args=(_change(job_id=f"job-{index}"),))
        for index in range(20)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(counter) == 200
    for subscription in subscriptions:
        subscription.unsubscribe()
    assert notifier.subscriber_count("alice") == 0


def test_stale_change_of_a_job_is_dropped() -> None:
    notifier = ChangeNotifier()
    seen: list[tuple[str, int]] = []
    notifier.subscribe("alice", lambda change: seen.append((change.job_id, change.version)))

    notifier.publish(_change(version=3, status=JobStatus.COMPLETED))
    dropped = notifier.publish(_change(version=2))
    notifier.publish(_change(job_id="job-2", version=2))

    assert dropped == 0
    assert seen == [("job-1", 3), ("job-2", 2)]


def test_racing_publishers_keep_commit_order_per_subscriber() -> None:
    notifier = ChangeNotifier()
    slow_started = threading.Event()
    first: list[JobStatus] = []
    second: list[JobStatus] = []

    def _slow(change: JobChange) -> None:
        if change.status == JobStatus.PROCESSING:
            slow_started.set()
            time.sleep(0.3)
        first.append(change.status)

    notifier.subscribe("alice", _slow)
    notifier.subscribe("alice", lambda change: second.append(change.status))

    processing = threading.Thread(
        target=notifier.publish,
        args=(_change(status=JobStatus.PROCESSING, version=2),),
    )
    processing.start()
    assert slow_started.wait(timeout=5)
    notifier.publish(_change(status=JobStatus.COMPLETED, version=3))
    processing.join(timeout=5)

    assert first == [JobStatus.PROCESSING, JobStatus.COMPLETED]
    assert second in (
        [JobStatus.PROCESSING, JobStatus.COMPLETED],
        [JobStatus.COMPLETED],
    )
