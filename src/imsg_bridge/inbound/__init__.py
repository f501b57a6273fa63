"""Inbound half of the bridge: store polling, dedup and attachment resolution."""
