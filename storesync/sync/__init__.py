"""Outbound sync: retrying remote calls, pagination, reconciliation, aggregation."""
