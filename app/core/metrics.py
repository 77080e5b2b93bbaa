"""
Prometheus counters exposed on /metrics.
"""
from prometheus_client import Counter

RESERVATIONS = Counter(
    "ledger_reservations_total",
    "Interview reservation attempts by outcome",
    ["outcome", "credit_source"],
)

TRANSACTION_RETRIES = Counter(
    "ledger_transaction_retries_total",
    "Optimistic transaction conflicts that triggered a retry",
    ["operation"],
)

RECONCILED_INTERVIEWS = Counter(
    "ledger_reconciled_interviews_total",
    "Interviews touched by the reconciliation sweep",
    ["outcome"],
)

CONSISTENCY_WARNINGS = Counter(
    "scoring_consistency_warnings_total",
    "Per-answer vs holistic score discrepancies",
    ["code"],
)
