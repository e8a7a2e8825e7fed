"""Budget and purchasing workflow back office."""
