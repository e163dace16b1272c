"""Face detection backends and the region detector."""
