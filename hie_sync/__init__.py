"""HIE patient identity and document synchronization."""
