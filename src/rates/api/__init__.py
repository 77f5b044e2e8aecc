"""HTTP query surface over the store and conversion engine."""
