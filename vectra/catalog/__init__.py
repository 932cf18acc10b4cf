"""Reference presets and the file-backed store for catalog and user data."""
