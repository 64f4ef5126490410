"""Reset the projection: clear jobs/agents/events and rewind the sync cursor.

The next sync run re-indexes everything from the cursor position.
Works with both SQLite (local dev) and PostgreSQL.
Does NOT import server.py to avoid triggering server initialization side effects.

Usage: python scripts/reset_db.py [--block N]
"""
import argparse
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from models import db, Job, Agent, EventRecord
from services.sync_cursor import SqlSyncCursor
from flask import Flask

parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
parser.add_argument('--block', type=int, default=Config.START_BLOCK,
                    help='cursor value after reset (default: START_BLOCK)')
args = parser.parse_args()

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = Config.SQLALCHEMY_DATABASE_URI
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
db.init_app(app)

with app.app_context():
    db.create_all()
    for model in (EventRecord, Job, Agent):
        db.session.execute(model.__table__.delete())
    SqlSyncCursor(start_block=Config.START_BLOCK).reset(args.block)
    db.session.commit()
    print(f"Projection cleared, cursor at block {args.block}: {Config.SQLALCHEMY_DATABASE_URI}")
