"""HTTP control API for proccompose."""
