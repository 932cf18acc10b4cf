"""Configuration loading for the Vectra server and tools."""
