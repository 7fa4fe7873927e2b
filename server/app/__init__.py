"""Forgebench application: model routing, streaming and metering."""
