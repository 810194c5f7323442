from importlib import metadata
from pathlib import Path


def get_version() -> str:
  path = Path(__file__).parent.resolve().with_name('VERSION')
  if path.exists():
    return path.read_text().strip()
  # Installed without the source tree.
  return metadata.version('imgoptim')


version = get_version()
