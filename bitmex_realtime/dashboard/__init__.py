"""Status API for a running realtime client."""
