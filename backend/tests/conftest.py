import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
str_path = str(ROOT)
if str_path not in sys.path:
    sys.path.insert(0, str_path)
