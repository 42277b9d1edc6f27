"""
storage.py - JSON file helpers shared by the ledger and the wallet registry
"""

import json
import logging
import os

logger = logging.getLogger('matchday.storage')


def load_json(path: str, default):
    """Load a JSON document, or return `default` if the file does not exist yet"""
    if not os.path.exists(path):
        return default
    with open(path, 'r') as f:
        return json.load(f)


def save_json(path: str, data) -> None:
    """Write through a temp file and rename so a crash never leaves half a file behind"""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)
