# Import models so they are registered with SQLAlchemy's Base metadata
from .document import StoredDocumentRow

__all__ = ["StoredDocumentRow"]
