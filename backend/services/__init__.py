# Services are imported directly where needed, e.g.:
# from services.auth import SessionManager
# from services.storage import get_storage

__all__ = []
