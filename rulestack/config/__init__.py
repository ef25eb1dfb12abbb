"""Configuration: registries file and project layout constants."""
