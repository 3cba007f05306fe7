"""Core orchestration, consensus and storage components for wallbounce."""
