"""Configuration and error taxonomy shared by the sidecar and the host."""
