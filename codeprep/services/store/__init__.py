from .service import DEFAULT_DATABASE_URL, SessionStore, rating_for

__all__ = ["DEFAULT_DATABASE_URL", "SessionStore", "rating_for"]
