"""HTTP layer, job store and claim processor for export jobs."""
