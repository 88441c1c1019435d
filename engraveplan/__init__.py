"""engraveplan: collision-free page layout planning for timed scores."""

__version__ = "0.1.0"
