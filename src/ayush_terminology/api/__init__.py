"""HTTP boundary layer for the AYUSH terminology engine."""
