import json
import os

ABI_DIR = os.path.dirname(__file__)


def load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)
