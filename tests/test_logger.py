from logger import RecentLogBuffer, attach_log_buffer, detach_log_buffer, get_logger


def test_buffer_filters_by_level_operation_and_limit():
    buffer = attach_log_buffer(RecentLogBuffer(max_entries=10))
    try:
        sync_log = get_logger("sync_test")
        cache_log = get_logger("cache_test")
        sync_log.info("one")
        sync_log.warning("two")
        cache_log.info("three")
        try:
            raise ValueError("boom")
        except ValueError:
            cache_log.error("four", exc_info=True)
    finally:
        detach_log_buffer(buffer)

    assert [e["message"] for e in buffer.get_logs()] == ["one", "two", "three", "four"]
    assert [e["message"] for e in buffer.get_logs(level="warning")] == ["two"]
    assert [e["message"] for e in buffer.get_logs(operation="cache_test")] == ["three", "four"]
    assert [e["message"] for e in buffer.get_logs(limit=2)] == ["three", "four"]
    assert buffer.get_logs(level="error")[0]["error"] == "boom"


def test_buffer_is_bounded_and_clearable():
    buffer = attach_log_buffer(RecentLogBuffer(max_entries=3))
    try:
        log = get_logger("bounded_test")
        for i in range(5):
            log.info(str(i))
    finally:
        detach_log_buffer(buffer)

    assert [e["message"] for e in buffer.get_logs()] == ["2", "3", "4"]
    buffer.clear()
    assert buffer.get_logs() == []


def test_detached_buffer_stops_collecting():
    buffer = attach_log_buffer(RecentLogBuffer())
    detach_log_buffer(buffer)
    get_logger("detached_test").info("ignored")
    assert buffer.get_logs() == []
