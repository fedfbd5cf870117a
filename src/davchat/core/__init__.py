"""Configuration, logging and error types for DavChat."""
