import threading

from profileops_api.run_registry import QueueRun, RunRegistry


def test_register_succeeds_only_when_no_run_is_active() -> None:
    registry = RunRegistry()
    first = QueueRun()
    second = QueueRun()

    assert registry.register(first) is True
    assert registry.register(second) is False
    assert registry.current() is first


def test_request_stop_without_active_run_is_a_noop() -> None:
    registry = RunRegistry()

    assert registry.request_stop() is False
    assert registry.is_active() is False


def test_request_stop_marks_the_registered_run() -> None:
    registry = RunRegistry()
    run = QueueRun()
    registry.register(run)

    assert run.stop_requested is False
    assert registry.request_stop() is True
    assert run.stop_requested is True


def test_clear_releases_slot_for_next_run() -> None:
    registry = RunRegistry()
    first = QueueRun()
    registry.register(first)

    registry.clear(first)

    assert registry.is_active() is False
    assert registry.register(QueueRun()) is True


def test_clear_with_other_run_leaves_current_in_place() -> None:
    registry = RunRegistry()
    active = QueueRun()
    registry.register(active)

    registry.clear(QueueRun())

    assert registry.current() is active


def test_concurrent_registration_has_exactly_one_winner() -> None:
    registry = RunRegistry()
    attempts = 32
    barrier = threading.Barrier(attempts)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _attempt() -> None:
        run = QueueRun()
        barrier.wait()
        won = registry.register(run)
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=_attempt) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(results) == attempts
    assert results.count(True) == 1
    assert registry.is_active() is True
