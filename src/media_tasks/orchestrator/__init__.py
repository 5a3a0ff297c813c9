"""Job orchestration: store, dispatch, polling, retry sweeps, notifications."""
