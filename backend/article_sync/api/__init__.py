"""
API blueprints
"""
from .media import media_bp
from .sources import sources_bp
from .queues import queues_bp

__all__ = ['media_bp', 'sources_bp', 'queues_bp']
