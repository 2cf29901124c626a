"""
Centralized path configuration for Stackyard
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - these MUST use absolute paths to the volume mount
# The /app/data directory is mounted as a volume in the container
DATA_DIR = os.getenv('STACKYARD_DATA_DIR', '/app/data')

# For development/testing outside a container
if not os.path.exists('/app') and 'STACKYARD_DATA_DIR' not in os.environ:
    # Running locally, use relative paths
    DATA_DIR = './data'

# Database path - MUST be in the volume mount for persistence
DATABASE_PATH = os.path.join(DATA_DIR, 'stackyard.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Durable stack projects live under <STACKS_DIR>/<stack_id>/<entry_point>
STACKS_DIR = os.getenv('STACKYARD_STACKS_DIR', os.path.join(DATA_DIR, 'stacks'))

# Fernet key for secrets stored in the database (git passwords, kubeconfigs)
ENCRYPTION_KEY_PATH = os.getenv('STACKYARD_ENCRYPTION_KEY_PATH', os.path.join(DATA_DIR, 'encryption.key'))


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, STACKS_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
