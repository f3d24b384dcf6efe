"""Guardian -- REST surface."""
