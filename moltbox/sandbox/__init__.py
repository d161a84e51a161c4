"""Gateway supervision and durable state sync inside the sandbox."""
