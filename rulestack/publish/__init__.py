"""Publishing staged archives to a registry."""
