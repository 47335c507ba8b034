import sys
from pathlib import Path

# Tests run against the package in src/ without installing it
src_path = str(Path(__file__).parent / 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)
