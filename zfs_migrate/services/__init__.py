"""Migration steps that run against the mounted source and target trees."""
