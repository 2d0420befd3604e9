from .suggestion_generator import SuggestionGenerator, rank

__all__ = ['SuggestionGenerator', 'rank']
