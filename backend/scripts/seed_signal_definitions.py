#!/usr/bin/env python3
"""
Signal Definition Seed Script
Creates the built-in active signal definitions, or toggles one of them.

Usage:
    python -m scripts.seed_signal_definitions
    python -m scripts.seed_signal_definitions deactivate <signal_key>
    python -m scripts.seed_signal_definitions activate <signal_key>

Example:
    python -m scripts.seed_signal_definitions deactivate prolonged_inactivity_gap
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from regulation_engine.database import SessionLocal, init_db
from regulation_engine.services.exceptions import RegulationEngineError
from regulation_engine.services.surfacing import SignalDefinitionRegistry


def seed_definitions() -> bool:
    """Insert any missing definition. Existing rows keep their settings."""
    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        created = SignalDefinitionRegistry(db).seed_defaults()
        db.commit()
        print(f"Seeded {created} signal definitions.")
        return True
    except Exception as e:
        print(f"Error seeding signal definitions: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def set_definition_active(signal_key: str, is_active: bool) -> bool:
    init_db()

    db: Session = SessionLocal()
    try:
        definition = SignalDefinitionRegistry(db).set_active(signal_key, is_active)
        db.commit()
        print(f"Signal definition '{definition.signal_key.value}' is_active={definition.is_active}")
        return True
    except RegulationEngineError as e:
        print(f"Error: {e.message}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) == 1:
        success = seed_definitions()
    elif len(sys.argv) == 3 and sys.argv[1] in ("activate", "deactivate"):
        success = set_definition_active(sys.argv[2], sys.argv[1] == "activate")
    else:
        print(__doc__)
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
