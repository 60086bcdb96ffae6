"""PayPal subscription webhook pipeline.

Receives PayPal subscription notifications, verifies them against the
provider, deduplicates by event id, and applies each one to subscription
state exactly once. Failed events land in a dead-letter table for replay.
"""
