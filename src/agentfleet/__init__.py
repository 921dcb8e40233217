"""agentfleet: install a monitoring agent across cloud fleets."""

__version__ = "0.1.0"
