"""Outbound half of the bridge: target resolution, file containment and delivery."""
