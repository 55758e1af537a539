"""Infrastructure layer: storage adapters and observability."""
