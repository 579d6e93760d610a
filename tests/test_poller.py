import httpx

from boxoffice.load_client import Stats, Result, psid_from_redirect
from boxoffice.poller import TIMEOUT, poll_until_settled


def client_for(answers):
    """Serve the queued answers in order, repeating the last one."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        answer = answers[min(len(calls), len(answers)) - 1]
        if isinstance(answer, Exception):
            raise answer
        return answer

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


async def test_polls_until_completed():
    client, calls = client_for([
        httpx.Response(200, json={"status": "PENDING"}),
        httpx.Response(200, json={"status": "PENDING"}),
        httpx.Response(200, json={"status": "COMPLETED",
                                  "attendee_id": "att-1"}),
    ])
    result = await poll_until_settled(client, "http://shop/", "tx-1",
                                      interval_s=0)
    assert result.status == "COMPLETED"
    assert result.attempts == 3
    assert result.attendee_id == "att-1"
    assert calls == ["/api/orders/tx-1"] * 3


async def test_failed_order_carries_reason():
    client, _ = client_for([
        httpx.Response(200, json={"status": "FAILED",
                                  "reason": "capacity_exceeded"}),
    ])
    result = await poll_until_settled(client, "http://shop", "tx-1",
                                      interval_s=0)
    assert result.status == "FAILED"
    assert result.reason == "capacity_exceeded"
    assert result.attempts == 1


async def test_gives_up_after_max_attempts():
    client, calls = client_for([
        httpx.Response(200, json={"status": "PENDING"}),
    ])
    result = await poll_until_settled(client, "http://shop", "tx-1",
                                      interval_s=0, max_attempts=4)
    assert result.status == TIMEOUT
    assert result.attempts == 4
    assert len(calls) == 4


async def test_errors_count_as_attempts():
    client, calls = client_for([
        httpx.ConnectError("down"),
        httpx.Response(503),
        httpx.Response(404, json={"error": "NotFound"}),
        httpx.Response(200, json={"status": "COMPLETED"}),
    ])
    result = await poll_until_settled(client, "http://shop", "tx-1",
                                      interval_s=0, max_attempts=10)
    assert result.status == "COMPLETED"
    assert result.attempts == 4


def test_psid_from_redirect():
    assert psid_from_redirect("/mockpay/mock_abc") == "mock_abc"
    assert psid_from_redirect("http://shop/mockpay/mock_abc") == "mock_abc"
    assert psid_from_redirect("https://pay.test/s/abc") is None


def test_load_stats_summary():
    stats = Stats()
    stats.add(Result(ok=True, tier="VIP", outcome="COMPLETED",
                     t_observed=1.0))
    stats.add(Result(ok=True, tier="VIP", outcome="FAILED",
                     reason="capacity_exceeded", t_observed=3.0))
    stats.add(Result(ok=True, tier="VIP", outcome=TIMEOUT))
    stats.add(Result(ok=False, tier="VIP", outcome="ERROR"))
    s = stats.summary()
    assert s["total"] == 4
    assert s["ok"] == 3
    assert s["completed"] == 1
    assert s["failed"] == 1
    assert s["capacity"] == 1
    assert s["timeout"] == 1
    assert s["error"] == 1
    assert s["avg_s"] == 2.0
