"""HTTP surface for the media pipeline."""
