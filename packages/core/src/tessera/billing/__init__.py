"""Payment events to license issuance."""
