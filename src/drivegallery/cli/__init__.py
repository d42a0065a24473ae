"""Command-line interface for drivegallery."""
