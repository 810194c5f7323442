import dataclasses
import os
import re
from enum import Enum
from typing import Optional
from urllib import parse

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from imgoptim.errors import BadPath
from imgoptim.typing import CacheKey, HttpPath, S3Key

ORIGINAL_OPERATIONS = 'original'

MAX_DIMENSION = 4000
MAX_QUALITY = 100

SUPPORTED_FORMATS = ['auto', 'jpeg', 'webp', 'avif', 'png', 'gif']

image_exts = set([
    '.jpg',
    '.jpeg',
    '.png',
    '.webp',
    '.gif',
    '.avif',
    '.svg',
])

operation_aliases = {
    'f': 'format',
    'format': 'format',
    'w': 'width',
    'width': 'width',
    'h': 'height',
    'height': 'height',
    'q': 'quality',
    'quality': 'quality',
}

slashes_re = re.compile(r'/{2,}')


class PathClass(Enum):
  IMAGE = 0
  DOCUMENT = 1


class PathClassTable:
  """Ordered pattern table; the first matching pattern decides the class."""
  entries: list[tuple[PathSpec, PathClass]]

  def __init__(self, entries: list[tuple[PathSpec, PathClass]]):
    self.entries = entries

  @classmethod
  def from_config(cls, path_classes: tuple[tuple[str, str], ...]) -> 'PathClassTable':
    return cls([(PathSpec.from_lines(GitWildMatchPattern, [pattern]), PathClass[name])
                for pattern, name in path_classes])

  def classify(self, path: HttpPath) -> Optional[PathClass]:
    for spec, path_class in self.entries:
      if spec.match_file(path):
        return path_class
    return None


@dataclasses.dataclass(eq=True, frozen=True)
class Operations:
  format: Optional[str] = None
  quality: Optional[int] = None
  width: Optional[int] = None
  height: Optional[int] = None

  def to_key(self) -> str:
    ops = []
    if self.format is not None:
      ops.append(f'format={self.format}')
    if self.quality is not None:
      ops.append(f'quality={self.quality}')
    if self.width is not None:
      ops.append(f'width={self.width}')
    if self.height is not None:
      ops.append(f'height={self.height}')
    return ORIGINAL_OPERATIONS if len(ops) == 0 else ','.join(ops)

  @classmethod
  def from_key(cls, s: str) -> Optional['Operations']:
    if s == ORIGINAL_OPERATIONS:
      return cls()

    values: dict[str, str] = {}
    for op in s.split(','):
      name, sep, value = op.partition('=')
      if sep == '' or name not in ('format', 'quality', 'width', 'height') or name in values:
        return None
      values[name] = value

    try:
      ops = cls(
          format=values.get('format'),
          quality=int(values['quality']) if 'quality' in values else None,
          width=int(values['width']) if 'width' in values else None,
          height=int(values['height']) if 'height' in values else None)
    except ValueError:
      return None

    if ops.format is not None and (ops.format == 'auto' or ops.format not in SUPPORTED_FORMATS):
      return None
    if ops.quality is not None and not 0 < ops.quality <= MAX_QUALITY:
      return None
    for dimension in (ops.width, ops.height):
      if dimension is not None and not 0 < dimension <= MAX_DIMENSION:
        return None

    # Only canonical forms are accepted.
    if ops.to_key() != s:
      return None
    return ops


@dataclasses.dataclass(eq=True, frozen=True)
class NormalizedRequest:
  path_class: PathClass
  path: HttpPath
  asset_key: S3Key
  cache_key: CacheKey
  operations: Operations


def get_normalized_extension(path: HttpPath) -> str:
  _, ext = os.path.splitext(path.lower())
  return ext


def key_from_path(path: HttpPath) -> S3Key:
  return S3Key(parse.unquote(path[1:]))


def canonical_path(path: str) -> HttpPath:
  if not path.startswith('/'):
    raise BadPath(f'path must be absolute: {path}')

  path = slashes_re.sub('/', path)
  for segment in parse.unquote(path).split('/'):
    if segment in ('.', '..'):
      raise BadPath(f'relative segment in path: {path}')

  return HttpPath(path)


def parse_positive(value: str, upper: int) -> Optional[int]:
  try:
    n = int(value)
  except ValueError:
    return None
  if n <= 0:
    return None
  return min(n, upper)


def resolve_format(value: str, accept_header: str) -> Optional[str]:
  f = value.lower()
  if f not in SUPPORTED_FORMATS:
    return None
  if f != 'auto':
    return f
  if 'image/avif' in accept_header:
    return 'avif'
  if 'image/webp' in accept_header:
    return 'webp'
  return 'jpeg'


def parse_operations(querystring: str, accept_header: str) -> Operations:
  found: dict[str, str] = {}
  for name, value in parse.parse_qsl(querystring, keep_blank_values=True):
    op = operation_aliases.get(name.lower())
    if op is None or op in found:
      continue
    found[op] = value

  return Operations(
      format=None if 'format' not in found else resolve_format(found['format'], accept_header),
      quality=None if 'quality' not in found else parse_positive(found['quality'], MAX_QUALITY),
      width=None if 'width' not in found else parse_positive(found['width'], MAX_DIMENSION),
      height=None if 'height' not in found else parse_positive(found['height'], MAX_DIMENSION))


def normalize(
    table: PathClassTable,
    path: str,
    querystring: str,
    accept_header: str = '',
) -> NormalizedRequest:
  canonical = canonical_path(path)

  path_class = table.classify(canonical)
  if path_class is None:
    raise BadPath(f'no path class for: {canonical}')

  asset_key = key_from_path(canonical)
  if asset_key == '' or asset_key.endswith('/'):
    raise BadPath(f'no asset named: {canonical}')

  match path_class:
    case PathClass.IMAGE:
      if get_normalized_extension(canonical) not in image_exts:
        raise BadPath(f'not an image: {canonical}')
      operations = parse_operations(querystring, accept_header)
      cache_key = CacheKey(f'{asset_key}/{operations.to_key()}')
    case PathClass.DOCUMENT:
      operations = Operations()
      cache_key = CacheKey(asset_key)
    case _:
      raise Exception('system error')

  return NormalizedRequest(
      path_class=path_class,
      path=canonical,
      asset_key=asset_key,
      cache_key=cache_key,
      operations=operations)
