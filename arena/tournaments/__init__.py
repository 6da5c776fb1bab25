"""Tournament module: registry, roster and refunds."""
from .registry import TournamentRegistry

__all__ = ["TournamentRegistry"]
