"""EPMS dashboard client cache."""
