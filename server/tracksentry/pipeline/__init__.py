"""Request pipeline: worker pool, orchestrator and control surface."""
