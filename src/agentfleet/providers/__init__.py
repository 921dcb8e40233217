"""Cloud provider discovery and provider-specific runners."""
