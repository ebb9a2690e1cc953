"""Data files bundled with the bridge (the default category catalog)."""
