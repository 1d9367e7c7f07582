"""Producer and consumer loops supervised by a shutdown event."""
