"""HTTP routes for blobferry."""
