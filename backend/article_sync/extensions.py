"""
Flask Extensions Initialization

Shared extension instances, bound to the application in create_app().
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Database instance
db = SQLAlchemy()

# Flask-Migrate instance
migrate = Migrate()
