from .search import CassHistorySearch, HistoryHit, HistorySearch, SearchResult

__all__ = ["CassHistorySearch", "HistoryHit", "HistorySearch", "SearchResult"]
