"""Asset Valuator: consensus asset prices from multiple unreliable sources."""
