"""Command-line interface (rcluster)."""
