# -*- coding: utf-8 -*-
"""
Incentra - Development server launcher
"""

import os

from app import create_app
from config import APP_CONFIG

app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', '5000'))
    print("=" * 60)
    print(f"{APP_CONFIG['APP_NAME']} {APP_CONFIG['VERSION']}")
    print(APP_CONFIG['APP_SUBTITLE'])
    print("=" * 60)
    print()
    print(f"Listening on http://127.0.0.1:{port}")
    print()

    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', host='127.0.0.1', port=port)
