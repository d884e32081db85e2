"""
Laburandik Seller Ops - Prometheus Metrics
==========================================
Centralized metrics definitions for observability.
"""

from prometheus_client import Counter, Histogram, Gauge, Info

# =============================================================================
# Application Info
# =============================================================================

app_info = Info("laburandik_app", "Application information")
app_info.info({
    "version": "0.1.0",
    "service": "backend",
})

# =============================================================================
# Request Metrics
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# =============================================================================
# MercadoLibre API Metrics
# =============================================================================

meli_requests_total = Counter(
    "meli_requests_total",
    "Total MercadoLibre API calls",
    labelnames=["endpoint", "status"]
)

meli_request_duration_seconds = Histogram(
    "meli_request_duration_seconds",
    "MercadoLibre API latency in seconds",
    labelnames=["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

token_refresh_total = Counter(
    "meli_token_refresh_total",
    "OAuth token refresh attempts",
    labelnames=["outcome"]
)

# =============================================================================
# Hosted Database Metrics
# =============================================================================

database_requests_total = Counter(
    "database_requests_total",
    "Total hosted database calls",
    labelnames=["kind", "outcome"]
)

database_request_duration_seconds = Histogram(
    "database_request_duration_seconds",
    "Hosted database latency in seconds",
    labelnames=["kind"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# =============================================================================
# Warehouse Metrics
# =============================================================================

scans_total = Counter(
    "warehouse_scans_total",
    "Barcode scans received",
    labelnames=["result"]
)

packs_total = Counter(
    "warehouse_packs_total",
    "Shipment packing writes",
    labelnames=["result"]
)

# Gauges for current state
redis_is_healthy = Gauge(
    "redis_is_healthy",
    "Redis health status (1=healthy, 0=unhealthy)"
)

database_is_healthy = Gauge(
    "database_is_healthy",
    "Hosted database health status (1=healthy, 0=unhealthy)"
)
