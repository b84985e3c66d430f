"""HTTP endpoints: public registry, payment webhook, health and status."""
