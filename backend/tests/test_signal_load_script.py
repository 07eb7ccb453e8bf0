from __future__ import annotations

import jwt

from signal_load_test import ListenerResult, SenderResult, _aggregate, _stats, mint_token, parse_args


def test_mint_token_carries_numeric_subject() -> None:
    token = mint_token(12, "secret")

    assert jwt.decode(token, "secret", algorithms=["HS256"])["sub"] == "12"


def test_stats_handles_empty_and_sorted_samples() -> None:
    assert _stats([]) is None

    stats = _stats([0.3, 0.1, 0.2])

    assert stats["p50"] == 0.2
    assert stats["max"] == 0.3


def test_aggregate_reports_delivery_ratio() -> None:
    listeners = [
        ListenerResult(user_id=1, connected=True, connect_latency=0.01, delivered=3, delivery_latencies=[0.1] * 3),
        ListenerResult(user_id=2, error="HTTPStatusError"),
    ]
    senders = [SenderResult(sent=4, pushed=3, request_latencies=[0.02] * 4)]

    summary = _aggregate(listeners, senders)

    assert summary["connected"] == 1
    assert summary["delivery_ratio"] == 0.75
    assert summary["failures"] == {"HTTPStatusError": 1}


def test_parse_args_defaults() -> None:
    args = parse_args(["http://localhost:8000", "--secret", "s", "--sender-id", "9"])

    assert args.listeners == 10
    assert args.sender_id == 9
    assert args.json is False
