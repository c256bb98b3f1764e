"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

api_requests_total = Counter("api_requests_total", "Total API requests", ["method", "endpoint", "status"])
api_request_duration = Histogram("api_request_duration_seconds", "API request duration")

calls_dispatched = Counter("calls_dispatched_total", "Calls dispatched, by backend and final status", ["backend", "status"])
dispatch_batches = Counter("dispatch_batches_total", "Dispatch batches, by backend", ["backend"])
webhook_events = Counter("webhook_events_total", "VAPI webhook events received", ["type"])
recommendation_fallbacks = Counter("recommendation_fallbacks_total", "Recommendations produced by the heuristic fallback")

result_cache_entries = Gauge("result_cache_entries", "Entries currently held in the result cache")
