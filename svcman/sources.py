"""
Source Sync

Materializes git-backed service sources under the configured root and
probes their origin remotes for new commits.
"""

import os
import shlex
import shutil
import logging
from pathlib import Path
from typing import Dict, List
from git import Repo, FetchInfo, InvalidGitRepositoryError, NoSuchPathError
from git.exc import CommandError

from svcman.config import ServiceSpec
from svcman.errors import CloneError, FetchError


UPDATE_SUFFIX = "-update-tmp"

logger = logging.getLogger(__name__)


def ssh_environment(spec: ServiceSpec) -> Dict[str, str]:
    """
    Environment for git commands that authenticate with the service's key.

    Args:
        spec: Service definition

    Returns:
        GIT_SSH_COMMAND override, or an empty mapping to use the default identity
    """
    if not spec.ssh_key_file:
        return {}
    key_path = Path.home() / ".ssh" / spec.ssh_key_file
    return {
        "GIT_SSH_COMMAND": f"ssh -i {shlex.quote(str(key_path))} -o IdentitiesOnly=yes"
    }


class SourceSync:
    """Manages working copies of git-backed services."""

    def __init__(self, root: str):
        """
        Initialize Source Sync.

        Args:
            root: Directory under which service sources live
        """
        self.root = Path(root)

    def service_dir(self, name: str) -> Path:
        return self.root / name

    def update_dir(self, name: str) -> Path:
        return self.root / f"{name}{UPDATE_SUFFIX}"

    def has_repository(self, name: str) -> bool:
        try:
            Repo(str(self.service_dir(name)))
            return True
        except (InvalidGitRepositoryError, NoSuchPathError):
            return False

    def ensure_present(self, name: str, spec: ServiceSpec) -> bool:
        """
        Clone the service's source unless a repository is already there.

        Args:
            name: Service name
            spec: Service definition with git_uri set

        Returns:
            True if a clone was made, False if the repository already existed

        Raises:
            CloneError: If the directory cannot be created or the clone fails
        """
        if self.has_repository(name):
            logger.debug(f"[{name}] Repository already present at {self.service_dir(name)}")
            return False

        target = self.service_dir(name)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CloneError(name, f"Failed to create {target}: {e}") from e

        logger.info(f"[{name}] Cloning {spec.git_uri} into {target}")
        self._clone(name, spec, target)
        return True

    def check_for_update(self, name: str, spec: ServiceSpec) -> bool:
        """
        Fetch from origin and report whether anything new arrived.

        Only remote-tracking refs move; the working tree and HEAD are left
        alone.

        Args:
            name: Service name
            spec: Service definition with git_uri set

        Returns:
            True if the fetch updated any ref, False if everything was up to date

        Raises:
            FetchError: If the repository cannot be opened or the fetch fails
        """
        path = self.service_dir(name)
        try:
            repo = Repo(str(path))
            origin = repo.remote("origin")
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise FetchError(name, f"No repository at {path}: {e}") from e
        except ValueError as e:
            raise FetchError(name, f"Repository at {path} has no origin remote") from e

        try:
            with repo.git.custom_environment(**ssh_environment(spec)):
                infos = origin.fetch()
        except (CommandError, ValueError) as e:
            raise FetchError(name, f"Fetch from origin failed: {e}") from e
        finally:
            repo.close()

        updated = self._updated_refs(name, infos)
        return len(updated) > 0

    def _updated_refs(self, name: str, infos: List[FetchInfo]) -> List[FetchInfo]:
        updated = []
        for info in infos:
            if info.flags & (FetchInfo.ERROR | FetchInfo.REJECTED):
                raise FetchError(name, f"Fetch of {info.name} failed: {info.note}")
            if info.flags & FetchInfo.HEAD_UPTODATE:
                continue
            updated.append(info)
            if info.old_commit is not None:
                logger.info(
                    f"[{name}] Received {info.name}: "
                    f"{info.old_commit.hexsha[:8]}..{info.commit.hexsha[:8]}"
                )
            else:
                logger.info(f"[{name}] Received new ref {info.name} at {info.commit.hexsha[:8]}")
        return updated

    def clone_update(self, name: str, spec: ServiceSpec) -> Path:
        """
        Clone the current upstream head next to the live working copy.

        Args:
            name: Service name
            spec: Service definition with git_uri set

        Returns:
            Path of the fresh clone

        Raises:
            CloneError: If the clone fails; no partial directory is left behind
        """
        target = self.update_dir(name)
        self.discard_update(name)
        logger.info(f"[{name}] Cloning update from {spec.git_uri} into {target}")
        try:
            self._clone(name, spec, target)
        except CloneError:
            self.discard_update(name)
            raise
        return target

    def replace_with_update(self, name: str) -> Path:
        """
        Swap the fresh clone into the service's working directory.

        Returns:
            The service's working directory

        Raises:
            OSError: If the old tree cannot be removed or the rename fails
        """
        source = self.update_dir(name)
        target = self.service_dir(name)
        if not source.is_dir():
            raise FileNotFoundError(f"No update clone at {source}")
        if target.exists():
            shutil.rmtree(target)
        os.rename(source, target)
        logger.info(f"[{name}] Replaced {target} with updated source")
        return target

    def discard_update(self, name: str) -> None:
        tmp = self.update_dir(name)
        if tmp.exists():
            shutil.rmtree(tmp, ignore_errors=True)

    def _clone(self, name: str, spec: ServiceSpec, target: Path) -> None:
        try:
            repo = Repo.clone_from(spec.git_uri, str(target), env=ssh_environment(spec) or None)
        except CommandError as e:
            raise CloneError(name, f"Clone of {spec.git_uri} failed: {e}") from e
        repo.close()
