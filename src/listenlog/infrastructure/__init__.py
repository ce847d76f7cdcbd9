"""Infrastructure layer: persistence, Spotify integration, observability."""
