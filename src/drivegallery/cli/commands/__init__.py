"""CLI command groups for drivegallery."""
