"""Prometheus counters for account guard operations."""

from __future__ import annotations

from prometheus_client import Counter

OPERATIONS = Counter(
    "account_guard_operations_total",
    "Account guard operations by name and outcome.",
    ["operation", "outcome"],
)

SIGNATURE_CHECKS = Counter(
    "account_guard_signature_checks_total",
    "Signature validations by result (accepted or the rejection code).",
    ["result"],
)


def record_operation(operation: str, outcome: str) -> None:
    OPERATIONS.labels(operation=operation, outcome=outcome).inc()


def record_signature_check(result: str) -> None:
    SIGNATURE_CHECKS.labels(result=result).inc()
