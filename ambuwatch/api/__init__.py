"""HTTP surface for the dashboard."""
