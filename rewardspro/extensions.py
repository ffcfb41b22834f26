"""
Shared Flask extension instances, bound to the app in create_app.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Models and services share this session
db = SQLAlchemy()

# Alembic revisions live in migrations/versions
migrate = Migrate()
