"""Print a new ENCRYPTION_KEY for the credential store."""

import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.security.encryption import generate_encryption_key


if __name__ == "__main__":
    print(generate_encryption_key())
