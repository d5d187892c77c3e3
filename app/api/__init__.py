# -*- coding: utf-8 -*-
"""
Incentra - JSON API
"""

from app.api.routes import api_bp

__all__ = ['api_bp']
