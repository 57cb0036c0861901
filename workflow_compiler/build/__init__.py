"""Build lifecycle: records, stores, coordinator and the pending-build poller."""
