"""Voice provider abstraction and adapters."""
