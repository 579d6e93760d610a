from boxoffice.infra import timings


def _record(kind):
    return next(r for r in timings.summary() if r["kind"] == kind)


def test_each_kind_keeps_a_bounded_window(monkeypatch):
    monkeypatch.setattr(timings, "WINDOW", 5)
    for i in range(50):
        timings.record_timing("test.window", float(i))

    rec = _record("test.window")
    assert rec["n"] == 5
    # only the latest samples count: 45..49
    assert rec["mean"] == 47.0


async def test_timeit_records_a_sample():
    for _ in range(3):
        async with timings.timeit("test.timeit"):
            pass
    rec = _record("test.timeit")
    assert rec["n"] == 3
    assert rec["mean"] >= 0.0
