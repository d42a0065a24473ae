"""API routers for drivegallery."""
