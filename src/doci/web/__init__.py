"""HTTP surface for the DOCI registry."""
