"""License credentials: canonical encoding, signing, registry model and client validation."""
