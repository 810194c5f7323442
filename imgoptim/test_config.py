import hashlib
import json
from typing import Any

import pytest
from conftest import KEY_PAIR_ID

from imgoptim.errors import InvalidConfig

from .config import Config, derive_origin_secret, parse_bool, parse_path_classes

SEED = 'c8a3f0e2b1d44e6f9a7b5c3d1e0f2a4b6c8d0e2f4a'


@pytest.fixture
def environ(public_pem: str) -> dict[str, str]:
  return {
      'ORIGIN_SECRET_SEED': SEED,
      'TRUSTED_KEYS': json.dumps({KEY_PAIR_ID: public_pem}),
      'TRANSFORMED_IMAGE_BUCKET': 'transformed-bucket',
      'ORIGINAL_IMAGE_BUCKET': 'original-bucket',
      'TRANSFORM_SERVICE_URL': 'https://abcdefg.lambda-url.us-east-1.on.aws/',
  }


def test_from_env(environ: dict[str, str], public_pem: str) -> None:
  config = Config.from_env(environ)

  assert hashlib.md5(SEED.encode()).hexdigest() == config.origin_secret
  assert ((KEY_PAIR_ID, public_pem),) == config.trusted_keys
  assert 'https://abcdefg.lambda-url.us-east-1.on.aws' == config.transform_url
  assert (('/medical-documents/**', 'DOCUMENT'), ('/img/**', 'IMAGE')) == config.path_classes
  assert 90 * 24 * 60 * 60 == config.store_ttl
  assert config.store_transformed
  assert not config.log_timing
  assert 'public, max-age=31622400' == config.cache_control_image
  assert 'public, max-age=86400' == config.cache_control_document
  assert 'public, max-age=0' == config.cache_control_error
  assert 5.0 == config.write_back_timeout


def test_explicit_origin_secret_wins(environ: dict[str, str]) -> None:
  environ['ORIGIN_SECRET'] = 'explicit-secret'

  assert 'explicit-secret' == Config.from_env(environ).origin_secret


def test_derive_origin_secret() -> None:
  assert 32 == len(derive_origin_secret(SEED))
  assert derive_origin_secret(SEED) == derive_origin_secret(SEED)
  assert derive_origin_secret(SEED) != derive_origin_secret(SEED + 'x')


@pytest.mark.parametrize('name', [
    'ORIGIN_SECRET_SEED',
    'TRUSTED_KEYS',
    'ORIGINAL_IMAGE_BUCKET',
    'TRANSFORM_SERVICE_URL',
])
def test_missing_variable(environ: dict[str, str], name: str) -> None:
  del environ[name]

  with pytest.raises(InvalidConfig):
    Config.from_env(environ)


@pytest.mark.parametrize('update', [
    {'TRUSTED_KEYS': 'not json'},
    {'TRUSTED_KEYS': '{}'},
    {'TRUSTED_KEYS': '["K"]'},
    {'STORE_TTL': '0'},
    {'STORE_TTL': 'ninety days'},
    {'LOG_TIMING': 'maybe'},
    {'WRITE_BACK_TIMEOUT': 'soon'},
    {'PATH_CLASSES': '/img/**=video'},
    {'PATH_CLASSES': ' , '},
])
def test_invalid_variable(environ: dict[str, str], update: dict[str, str]) -> None:
  environ.update(update)

  with pytest.raises(InvalidConfig):
    Config.from_env(environ)


def test_secret_reused_as_key_material(environ: dict[str, str], public_pem: str) -> None:
  environ['ORIGIN_SECRET'] = public_pem.splitlines()[1]

  with pytest.raises(InvalidConfig):
    Config.from_env(environ)


@pytest.mark.parametrize('update,expected', [
    ({}, True),
    ({'STORE_TRANSFORMED_IMAGES': 'false'}, False),
    ({'TRANSFORMED_IMAGE_BUCKET': ''}, False),
    ({'STORE_TRANSFORMED_IMAGES': 'TRUE'}, True),
])
def test_store_transformed(environ: dict[str, str], update: dict[str, str], expected: bool) -> None:
  environ.update(update)

  assert expected == Config.from_env(environ).store_transformed


def test_overrides(environ: dict[str, str]) -> None:
  environ.update({
      'PATH_CLASSES': '/docs/**=document, /media/**=IMAGE',
      'STORE_TTL': '3600',
      'IMAGE_MAX_AGE': '600',
      'ERROR_MAX_AGE': '10',
      'PRODUCT': 'acme',
      'LOG_TIMING': 'yes',
      'WRITE_BACK_TIMEOUT': '1.5',
  })
  config = Config.from_env(environ)

  assert (('/docs/**', 'DOCUMENT'), ('/media/**', 'IMAGE')) == config.path_classes
  assert 3600 == config.store_ttl
  assert 'public, max-age=600' == config.cache_control_image
  assert 'public, max-age=10' == config.cache_control_error
  assert 'acme' == config.product
  assert config.log_timing
  assert 1.5 == config.write_back_timeout


def test_hashable(environ: dict[str, str]) -> None:
  instances: dict[Config, Any] = {Config.from_env(environ): 1}

  assert Config.from_env(environ) in instances


@pytest.mark.parametrize('s,expected', [
    ('true', True),
    ('1', True),
    ('Yes', True),
    ('false', False),
    ('0', False),
    ('', False),
])
def test_parse_bool(s: str, expected: bool) -> None:
  assert expected == parse_bool('FLAG', s)


def test_parse_path_classes_keeps_order() -> None:
  assert (('/a/**', 'IMAGE'), ('/**', 'DOCUMENT')) == parse_path_classes('/a/**=image,/**=document')
