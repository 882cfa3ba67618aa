"""Static asset serving."""
