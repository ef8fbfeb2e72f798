"""Containment check for every local file access.

A candidate is accepted only when it is a relative path free of NUL and
control characters and, after both sides are resolved to their real
(symlink-free) locations, the candidate lies inside the base directory.
The candidate must exist: resolving a missing path is a rejection.
"""
import ntpath
import os
import posixpath
from typing import Optional

from pixelserve.log import log_debug


def has_control_chars(s: str) -> bool:
  return any(ord(c) < 0x20 for c in s)


def is_absolute(s: str) -> bool:
  if posixpath.isabs(s) or ntpath.isabs(s) or os.path.isabs(s):
    return True

  # Drive-relative ("C:foo") and UNC prefixes are absolute for our purposes.
  drive, _ = ntpath.splitdrive(s)
  return drive != '' or s.startswith('\\')


def is_inside(real_base: str, real_path: str) -> bool:
  if real_path == real_base:
    return True

  if os.path.commonpath([real_base, real_path]) != real_base:
    return False

  relative = os.path.relpath(real_path, real_base)
  if os.path.isabs(relative):
    return False

  return relative.split(os.sep)[0] != os.pardir


def check_path(base_path: str, candidate: str) -> Optional[str]:
  if base_path == '' or candidate == '':
    return None

  if '\0' in candidate or has_control_chars(candidate):
    return None

  if is_absolute(candidate):
    return None

  real_base = os.path.realpath(base_path, strict=True)
  if not os.path.isdir(real_base):
    return None

  real_path = os.path.realpath(os.path.join(real_base, candidate), strict=True)
  if not is_inside(real_base, real_path):
    return None
  return real_path


def resolve_safe_path(base_path: str, candidate: str) -> Optional[str]:
  """Real path of candidate under base_path, or None when it is not contained."""
  if not isinstance(base_path, str) or not isinstance(candidate, str):
    return None

  try:
    return check_path(base_path, candidate)
  except (OSError, ValueError) as e:
    log_debug('path check failed', {'reason': str(e)})
    return None


def is_path_safe(base_path: str, candidate: str) -> bool:
  return resolve_safe_path(base_path, candidate) is not None
