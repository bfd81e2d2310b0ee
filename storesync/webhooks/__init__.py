"""Webhook inbound system.

Receives store API webhooks. Each delivery is signature-verified over the
raw body, claimed for idempotency, acknowledged, and dispatched async.
"""
