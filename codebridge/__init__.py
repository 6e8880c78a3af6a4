"""codebridge - OpenCode session bridge: stdio sidecar and host-side session orchestrator."""

__version__ = "0.1.0"
