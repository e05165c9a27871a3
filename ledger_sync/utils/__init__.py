"""Value parsing and timezone helpers for provider payloads."""
