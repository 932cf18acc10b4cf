"""JSON HTTP API in front of the prompt compiler."""
