"""HTTP API for triggering and inspecting catalog syncs."""
