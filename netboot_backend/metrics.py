"""
Prometheus metrics for the netboot backend.
"""

from prometheus_client import Counter, Gauge

BACKEND_REQUESTS = Counter(
    "netboot_backend_requests_total",
    "Backend operations by outcome",
    ["operation", "result"],
)

AUTO_ASSIGNMENTS = Counter(
    "netboot_backend_auto_assignments_total",
    "Automatic IP assignments for previously unseen MACs",
    ["result"],
)

STORE_RELOADS = Counter(
    "netboot_backend_store_reloads_total",
    "Store reloads triggered by filesystem events",
    ["store", "result"],
)

ACTIVE_LEASES = Gauge(
    "netboot_backend_active_leases",
    "Non-expired leases held in memory",
)
