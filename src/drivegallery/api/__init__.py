"""FastAPI application package for drivegallery."""
