import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `typerush` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_shared_state():
	# rate limiter and leaderboard cache are process-wide; isolate tests from each other
	import typerush.main as typerush_main
	from typerush.cache import get_cache
	typerush_main._RATE_LIMIT_STORE.clear()
	get_cache().clear()
	yield
	typerush_main._RATE_LIMIT_STORE.clear()
	get_cache().clear()
