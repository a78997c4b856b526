"""Schema migrations for the change-feed state tables."""
