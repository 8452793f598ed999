"""Core functionality for Glitch: store, protocol, graph model and layout."""
