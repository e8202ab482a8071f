"""Block device access: inventory, mounts, sessions and the clone pipeline."""
