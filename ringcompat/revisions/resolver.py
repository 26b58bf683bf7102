"""Revision Resolver: fetch and build the two daemon revisions.

A revision with a ref is cloned (or fetched, if the checkout already
exists) into ``<work_dir>/sources/<A|B>`` and checked out detached at
that ref.  A revision without a ref builds the given local path as-is,
which is how the workspace under test is usually supplied.

Each revision builds into its own ``CARGO_TARGET_DIR`` under
``<work_dir>/builds/<A|B>`` so the two artifacts never collide.  The
finished artifact is copied into ``<cache_dir>/<build_hash>/``; a later
run with the same hash skips the build entirely.

Usage::

    resolver = RevisionResolver(config)
    revisions = await resolver.resolve_all(config.revision_sources())
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.commands import CommandRunner
from ..core.exceptions import BuildFailure, CommandExecutionError, ResolutionFailure
from ..core.models import Revision, RevisionId, RevisionSource

if TYPE_CHECKING:
    from ..core.config import HarnessConfig

logger = logging.getLogger(__name__)

# Directories never included in a tree hash.
EXCLUDED_DIRS = frozenset({".git", "target", "__pycache__", "node_modules"})


class RevisionResolver:
    """Resolve ``RevisionSource`` values into built ``Revision`` artifacts.

    Args:
        config: Harness configuration (work/cache dirs, build command).
        runner: Command runner; a fresh ``CommandRunner`` by default.

    """

    def __init__(self, config: HarnessConfig, runner: CommandRunner | None = None) -> None:
        """Initialize the resolver."""
        self._config = config
        self._runner = runner or CommandRunner()
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # -- Public API ---------------------------------------------------------

    async def resolve_all(self, sources: list[RevisionSource]) -> dict[RevisionId, Revision]:
        """Resolve every source concurrently.

        Both builds always run to completion; the first error (in source
        order) is raised once they have.

        Raises:
            ResolutionFailure: If a source cannot be fetched.
            BuildFailure: If a source does not build.

        """
        results = await asyncio.gather(
            *(self.resolve(source) for source in sources),
            return_exceptions=True,
        )
        revisions: dict[RevisionId, Revision] = {}
        errors: list[BaseException] = []
        for source, result in zip(sources, results, strict=True):
            if isinstance(result, BaseException):
                self._logger.error("Revision %s failed: %s", source.revision_id.value, result)
                errors.append(result)
            else:
                revisions[source.revision_id] = result
        if errors:
            raise errors[0]
        return revisions

    async def resolve(self, source: RevisionSource) -> Revision:
        """Resolve one source on a worker thread."""
        return await asyncio.to_thread(self.resolve_sync, source)

    def resolve_sync(self, source: RevisionSource) -> Revision:
        """Fetch, hash and (unless cached) build one revision."""
        rev = source.revision_id.value
        self._logger.info("Resolving revision %s from %s", rev, source.describe())
        checkout = self._checkout(source)
        build_hash = self.content_hash(checkout)

        cached = self._cache_path(build_hash)
        if cached.is_file():
            self._logger.info("Revision %s: cache hit for %s", rev, build_hash)
            return Revision(source=source, artifact=cached, build_hash=build_hash, cached=True)

        built = self._build(source, checkout)
        artifact = self._store(built, cached)
        self._logger.info("Revision %s built (%s)", rev, build_hash)
        return Revision(source=source, artifact=artifact, build_hash=build_hash)

    # -- Fetching -----------------------------------------------------------

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        result = self._runner.run(
            ["git", *args], cwd=cwd, timeout=self._config.build_timeout
        )
        return result.stdout.strip()

    def _checkout(self, source: RevisionSource) -> Path:
        """Return the directory holding the sources to build."""
        if source.ref is None and not source.is_remote:
            path = Path(source.remote).expanduser()
            if not path.is_dir():
                raise ResolutionFailure(
                    f"Local source for revision {source.revision_id.value} does not exist",
                    details={"path": str(path)},
                )
            return path.resolve()

        dest = self._config.work_dir / "sources" / source.revision_id.value
        ref = source.ref or "HEAD"
        try:
            if (dest / ".git").is_dir():
                self._git("remote", "set-url", "origin", source.remote, cwd=dest)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                if dest.exists():
                    shutil.rmtree(dest)
                self._git("clone", "--no-checkout", source.remote, str(dest))
            self._git("fetch", "--force", "origin", ref, cwd=dest)
            self._git("checkout", "--force", "--detach", "FETCH_HEAD", cwd=dest)
        except CommandExecutionError as exc:
            raise ResolutionFailure(
                f"Could not fetch revision {source.revision_id.value}",
                details={"source": source.describe(), "error": exc.message},
            ) from exc
        return dest.resolve()

    # -- Hashing ------------------------------------------------------------

    def content_hash(self, path: Path) -> str:
        """Return a hash identifying the sources in *path*.

        Git checkouts use the commit id, suffixed with a digest of any
        uncommitted changes and untracked files; anything else is hashed
        file by file.
        """
        head = self._runner.run(["git", "-C", str(path), "rev-parse", "HEAD"], check=False)
        if not (head.ok and head.stdout.strip()):
            return f"tree-{tree_digest(path)}"

        commit = head.stdout.strip()
        diff = self._runner.run(["git", "-C", str(path), "diff", "HEAD"], check=False)
        untracked = self._runner.run(
            ["git", "-C", str(path), "ls-files", "--others", "--exclude-standard", "-z"],
            check=False,
        )
        changes = diff.stdout if diff.ok else ""
        names = sorted(n for n in untracked.stdout.split("\0") if n) if untracked.ok else []
        if not changes and not names:
            return commit

        digest = hashlib.sha256(changes.encode("utf-8"))
        for name in names:
            file_path = path / name
            if not file_path.is_file():
                continue
            digest.update(b"\0" + name.encode("utf-8") + b"\0")
            digest.update(file_path.read_bytes())
        return f"{commit}-dirty-{digest.hexdigest()[:12]}"

    # -- Building -----------------------------------------------------------

    def _build(self, source: RevisionSource, checkout: Path) -> Path:
        rev = source.revision_id.value
        target_dir = (self._config.work_dir / "builds" / rev / "target").resolve()
        target_dir.mkdir(parents=True, exist_ok=True)
        self._logger.info("Building revision %s in %s", rev, checkout)
        try:
            self._runner.run(
                list(self._config.build_command),
                cwd=checkout,
                env={"CARGO_TARGET_DIR": str(target_dir)},
                timeout=self._config.build_timeout,
            )
        except CommandExecutionError as exc:
            raise BuildFailure(
                f"Building revision {rev} failed",
                details={"source": source.describe(), "error": exc.message, **exc.details},
            ) from exc

        artifact = target_dir / self._config.artifact_name
        if not artifact.is_file():
            raise BuildFailure(
                f"Build of revision {rev} produced no artifact",
                details={"expected": str(artifact)},
            )
        return artifact

    def _cache_path(self, build_hash: str) -> Path:
        return self._config.cache_dir / build_hash / Path(self._config.artifact_name).name

    def _store(self, built: Path, cached: Path) -> Path:
        """Copy *built* into the cache, atomically.

        Each writer copies into its own temp file, so two revisions with
        the same hash can store concurrently.
        """
        cached.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=cached.parent, prefix=f".{cached.name}.", suffix=".partial", delete=False
        ) as handle:
            partial = Path(handle.name)
        try:
            shutil.copy2(built, partial)
            partial.chmod(0o755)
            partial.replace(cached)
        except OSError:
            partial.unlink(missing_ok=True)
            raise
        return cached.resolve()


def tree_digest(root: Path) -> str:
    """Hash every file under *root*, skipping build and VCS directories."""
    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in EXCLUDED_DIRS and not d.startswith(".")
        )
        for filename in sorted(filenames):
            file_path = Path(dirpath) / filename
            digest.update(str(file_path.relative_to(root)).encode("utf-8"))
            digest.update(b"\0")
            with file_path.open("rb") as fh:
                for chunk in iter(lambda: fh.read(65536), b""):
                    digest.update(chunk)
    return digest.hexdigest()[:16]
