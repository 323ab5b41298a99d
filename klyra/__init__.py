"""Context management for coding agents: packing, rules, retrieval and cockpit cards."""

__version__ = "0.1.0"

__all__ = ["compact", "window", "instructions", "config", "retrieval", "cockpit"]