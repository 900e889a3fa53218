"""Activity-state inference."""
