"""Path safety checks for every filesystem access that takes a caller-supplied path."""

import os
from pathlib import Path

from ..config import config
from ..errors import PathSecurityError


def _is_within(target: Path, base: Path) -> bool:
    # relative_to() raises ValueError when target is not below base
    try:
        target.relative_to(base)
    except ValueError:
        return False
    return True


def validate_path_within_base(path: str | Path, base_path: str | Path) -> Path:
    """Validate that a path stays inside an allowed base directory.

    Symlinks are resolved before the check, so neither ``../`` components nor
    links pointing elsewhere can escape the base. A target that does not exist
    yet is accepted when its nearest existing ancestor is inside the base.

    Args:
        path: Path to validate (absolute, or relative to the cwd)
        base_path: Directory that must contain the path; must exist

    Returns:
        The resolved real path

    Raises:
        PathSecurityError: If the path (or its nearest existing ancestor)
            escapes the base, or the base does not exist
    """
    try:
        real_base = Path(base_path).resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise PathSecurityError(f"Allowed base directory does not exist: {base_path}") from e

    target = Path(os.path.abspath(path))

    if target.exists() or target.is_symlink():
        try:
            real_target = target.resolve(strict=True)
        except (OSError, RuntimeError) as e:
            # Dangling or looping symlink
            raise PathSecurityError(f"Path '{path}' cannot be resolved: {e}") from e
        if not _is_within(real_target, real_base):
            raise PathSecurityError(
                f"Path '{path}' resolves to '{real_target}' which is outside '{real_base}'"
            )
        return real_target

    # Validate the nearest existing ancestor; abspath already collapsed any ".."
    ancestor = target.parent
    missing = [target.name]
    while not ancestor.exists() and ancestor != ancestor.parent:
        missing.append(ancestor.name)
        ancestor = ancestor.parent
    try:
        real_ancestor = ancestor.resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise PathSecurityError(f"Parent directory does not exist: {target.parent}") from e
    if not _is_within(real_ancestor, real_base):
        raise PathSecurityError(
            f"Path '{path}' parent directory is outside allowed directory '{real_base}'"
        )
    return real_ancestor.joinpath(*reversed(missing))


def get_allowed_base_path() -> Path:
    """Return the configured allowed base directory.

    Raises:
        PathSecurityError: If neither CODERAG_ALLOWED_BASE, PROJECT_PATH nor
            the ``allowed_base`` config key is set
    """
    base = os.getenv("CODERAG_ALLOWED_BASE") or os.getenv("PROJECT_PATH") or config.get("allowed_base")
    if not base:
        raise PathSecurityError("CODERAG_ALLOWED_BASE or PROJECT_PATH must be set")
    return Path(base)
