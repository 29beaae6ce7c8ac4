"""Background workers for generation jobs."""
