"""Prometheus counters for authentication outcomes."""

from __future__ import annotations

from prometheus_client import Counter

GATE_DECISIONS = Counter(
    "miniapp_gate_decisions_total",
    "Route gatekeeper decisions by outcome (forwarded or rejection reason).",
    ["outcome"],
)

LOGIN_ATTEMPTS = Counter(
    "miniapp_login_attempts_total",
    "Login attempts by outcome (accepted or rejection reason).",
    ["outcome"],
)
