#!/usr/bin/env python3
"""
BoxOffice load client (async)

Simulates the buyer's browser against a server running the MockPay backend:
  1) GET  /api/events/{event_id}  -> tiers with current prices
  2) POST /api/checkout            -> {transaction_id, redirect_url}
  3) Extract psid from redirect_url (/mockpay/{psid})
  4) POST /mockpay/{psid}/emit     (t=succeeded|failed|canceled)
  5) Poll GET /api/orders/{transaction_id} until settled, bounded

Selling more seats than a tier holds is the point: the report shows how many
orders settled FAILED on capacity, and the server's sold counts must never
exceed capacity.

Usage:
  python -m boxoffice.load_client --event <event_id> \
                                  --total 200 --concurrency 50
"""

import argparse
import asyncio
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .poller import TIMEOUT, poll_until_settled


def _rand_name() -> str:
    return "Load " + "".join(random.choices(string.ascii_lowercase, k=8))


@dataclass
class Result:
    ok: bool
    tier: str
    outcome: str  # COMPLETED/FAILED/TIMEOUT/ERROR
    reason: Optional[str] = None
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until a settled status was observed
    polls: int = 0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.results
                if r.outcome in ("COMPLETED", "FAILED")]
        lat = [r.t_observed for r in done if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "completed": self.count("COMPLETED"),
            "failed": self.count("FAILED"),
            "capacity": sum(1 for r in self.results
                            if r.reason == "capacity_exceeded"),
            "timeout": self.count(TIMEOUT),
            "error": self.count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"COMPLETED: {int(s['completed'])}   FAILED: {int(s['failed'])} "
            f"(capacity: {int(s['capacity'])})   "
            f"TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (observed order resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


def psid_from_redirect(redirect_url: str) -> Optional[str]:
    # "/mockpay/{psid}" or an absolute URL ending in it
    parts = httpx.URL(redirect_url).path.strip("/").split("/")
    if len(parts) >= 2 and parts[-2] == "mockpay" and parts[-1]:
        return parts[-1]
    return None


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    tier: Dict[str, Any],
    emit_kind: str,
    poll_interval_s: float,
    poll_attempts: int,
) -> Result:
    r = Result(ok=False, tier=tier["name"], outcome="ERROR")

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={
                "event_id": event_id,
                "line_items": [{
                    "tier_id": tier["id"],
                    "quantity": 1,
                    "unit_price": tier["unit_price"],
                }],
                "buyer": {"name": _rand_name(), "phone": "0911223344"},
            },
            timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
        transaction_id = j["transaction_id"]
        redirect_url = j["redirect_url"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) extract psid
    psid = psid_from_redirect(redirect_url)
    if not psid:
        r.err = f"bad redirect_url: {redirect_url}"
        return r

    # 3) emit outcome (simulate clicking the button on the MockPay page)
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{psid}/emit",
            data={"t": emit_kind},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 4) bounded polling
    t2 = time.perf_counter()
    polled = await poll_until_settled(
        client, base, transaction_id,
        interval_s=poll_interval_s, max_attempts=poll_attempts,
    )
    r.t_observed = time.perf_counter() - t2
    r.polls = polled.attempts
    r.ok = True
    r.outcome = polled.status
    r.reason = polled.reason
    return r


async def run_load(
    base: str,
    event_id: str,
    total: int,
    concurrency: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_attempts: int,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "BoxOfficeLoad/1.0"}
    ) as client:
        page = await client.get(f"{base}/api/events/{event_id}")
        page.raise_for_status()
        tiers = page.json()["tiers"]
        if not tiers:
            raise SystemExit(f"event {event_id} has no ticket tiers")

        async def worker(n: int):
            async with sem:
                tier = random.choice(tiers)
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"

                res = await one_order(
                    client, base, event_id, tier, emit_kind,
                    poll_interval_s, poll_attempts,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="BoxOffice load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", required=True,
                    help="Event id to buy tickets for")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as canceled")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-attempts", type=int, default=200,
                    help="Max status polls per order")
    args = ap.parse_args()

    if args.fail_rate + args.cancel_rate > 0.95:
        print(
            "Warning: combined fail+cancel rate is very high; "
            "few COMPLETED outcomes will occur."
        )

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        event_id=args.event,
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_attempts=args.poll_attempts,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
