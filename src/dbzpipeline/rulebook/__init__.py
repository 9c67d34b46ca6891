"""Rulebook lexicon loading and extraction."""

from .lexicon import RulebookError, RulebookLexicon, default_lexicon, load_rulebook_lexicon

__all__ = ["RulebookError", "RulebookLexicon", "default_lexicon", "load_rulebook_lexicon"]
