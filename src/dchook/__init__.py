"""dchook: authenticated deployment webhooks for Docker Compose hosts."""

# Release tooling stamps these; "dev" builds are compatible with any peer.
BUILD_VERSION = "dev"
BUILD_COMMIT = "unknown"

__all__ = ["BUILD_VERSION", "BUILD_COMMIT"]
