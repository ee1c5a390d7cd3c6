"""Container helper scripts shipped with the MongoDB image."""
