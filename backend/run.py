"""
Application entry point
Article sync - backend service

Usage:
    python run.py

Environment:
    - copy env.example to .env
    - adjust values as needed
"""
import sys
import os

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from article_sync import create_app
from article_sync.config import get_config

config_class = get_config()

app = create_app(config_class)

if __name__ == '__main__':
    env = os.environ.get('FLASK_ENV', 'development')
    if env == 'production':
        for problem in config_class.validate():
            print(f"⚠️  {problem}")

    print("=" * 60)
    print("Article sync - backend service")
    print("=" * 60)
    print(f"📌 Address: http://localhost:8000")
    print(f"📌 Environment: {env}")
    print(f"📌 Database: {app.config['SQLALCHEMY_DATABASE_URI']}")
    print(f"📌 Media path: {app.config['MEDIA_PATH']} (served at {app.config['MEDIA_BASE_URL']})")
    print(f"📌 CORS origins: {', '.join(config_class.CORS_ORIGINS)}")

    from article_sync.utils.crypto import get_crypto
    if get_crypto().is_secure:
        print("🔒 Secret encryption: enabled")
    else:
        print("⚠️  Secret encryption: disabled (set SECRET_ENCRYPTION_KEY)")

    if app.config.get('ADMIN_API_KEY'):
        print("🔒 Admin auth: enabled")
    else:
        print("⚠️  Admin auth: disabled (set ADMIN_API_KEY)")

    print("=" * 60)

    app.run(host='0.0.0.0', port=8000, debug=(env == 'development'), use_reloader=False)
