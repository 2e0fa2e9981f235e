"""Job residency, durable status snapshots and lifecycle operations."""
