"""Single-room classroom quiz server."""
