"""
GPG tier — vendor signatures over checksum manifests or artifacts.

Vendors such as Node.js and HashiCorp publish one checksum manifest
per release plus a detached signature over it.  Python and Go sign
each artifact instead (``<artifact>.asc``); that signature is checked
against the downloaded file in the engine's workspace.  Verification runs
``gpg`` against a private GNUPGHOME created inside a secure workspace,
so concurrent verifications never share keyring state and the
operator's own keyring is never touched.

Keyring layout under ``keyring_dir/<tool>/``::

    *.asc, *.gpg         individual public keys (imported per call)
    keyring/pubring.kbx  a prepared keybox (copied per call)

Outcomes:

    GOOD         → manifest trusted (digest looked up by exact filename),
                   or artifact trusted as downloaded
    BAD          → ``SignatureInvalid`` (fatal, never downgraded)
    UNAVAILABLE  → no gpg, no keys, no signature, unknown signer: tier skipped
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from src.core.models.artifact import Digest, Platform
from src.core.models.config import GpgSpec, ToolSpec
from src.core.reliability.retry import RetryExecutor
from src.core.services.fetch import http
from src.core.services.fetch.digests import find_manifest_digest
from src.core.services.fetch.errors import PermanentError, SignatureInvalid
from src.core.services.fetch.platform import template_vars
from src.core.services.fetch.workspace import SecureWorkspace

logger = logging.getLogger(__name__)

_STATUS_PREFIX = "[GNUPG:] "


class SignatureStatus(StrEnum):
    GOOD = "good"
    BAD = "bad"
    UNAVAILABLE = "unavailable"


@dataclass
class SignatureResult:
    status: SignatureStatus
    signer: str = ""
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SignatureStatus.GOOD


def parse_status(output: str) -> SignatureResult:
    """Interpret ``gpg --status-fd`` output."""
    keywords: dict[str, str] = {}
    for line in output.splitlines():
        if not line.startswith(_STATUS_PREFIX):
            continue
        keyword, _, rest = line[len(_STATUS_PREFIX):].partition(" ")
        keywords.setdefault(keyword, rest)

    if "BADSIG" in keywords:
        return SignatureResult(SignatureStatus.BAD, detail=f"BADSIG {keywords['BADSIG']}")
    if "REVKEYSIG" in keywords:
        return SignatureResult(SignatureStatus.BAD, detail=f"signed with revoked key {keywords['REVKEYSIG']}")
    if "GOODSIG" in keywords and "VALIDSIG" in keywords:
        signer = keywords["GOODSIG"].partition(" ")[2]
        return SignatureResult(SignatureStatus.GOOD, signer=signer)
    if "EXPKEYSIG" in keywords and "VALIDSIG" in keywords:
        signer = keywords["EXPKEYSIG"].partition(" ")[2]
        logger.warning("Signature made by expired key: %s", signer)
        return SignatureResult(SignatureStatus.GOOD, signer=signer, detail="expired key")
    if "NO_PUBKEY" in keywords or "ERRSIG" in keywords:
        missing = keywords.get("NO_PUBKEY") or keywords.get("ERRSIG", "").split(" ")[0]
        return SignatureResult(SignatureStatus.UNAVAILABLE, detail=f"no public key {missing}")
    return SignatureResult(SignatureStatus.UNAVAILABLE, detail="no signature status reported")


class GpgVerifier:
    """Detached-signature verification with per-tool trusted keyrings."""

    def __init__(
        self,
        keyring_dir: Path,
        *,
        gpg_binary: str = "gpg",
        timeout: float = 60.0,
        workspace_dir: Path | None = None,
    ):
        self.keyring_dir = keyring_dir
        self.gpg_binary = gpg_binary
        self.timeout = timeout
        self.workspace_dir = workspace_dir

    @property
    def available(self) -> bool:
        return shutil.which(self.gpg_binary) is not None

    def keyring_path(self, keyring: str) -> Path:
        return self.keyring_dir / keyring

    def key_files(self, keyring: str) -> list[Path]:
        root = self.keyring_path(keyring)
        if not root.is_dir():
            return []
        return sorted(p for p in root.iterdir() if p.is_file() and p.suffix in (".asc", ".gpg"))

    def has_keys(self, keyring: str) -> bool:
        keybox = self.keyring_path(keyring) / "keyring" / "pubring.kbx"
        return keybox.is_file() or bool(self.key_files(keyring))

    def verify(self, data: Path, signature: Path, keyring: str) -> SignatureResult:
        """Verify ``signature`` over ``data`` against ``keyring``'s keys."""
        if not self.available:
            return SignatureResult(SignatureStatus.UNAVAILABLE, detail=f"{self.gpg_binary} not installed")
        if not self.has_keys(keyring):
            return SignatureResult(
                SignatureStatus.UNAVAILABLE,
                detail=f"no trusted keys in {self.keyring_path(keyring)}",
            )

        with SecureWorkspace.create(prefix="devfetch-gpg-", base_dir=self.workspace_dir) as ws:
            home = ws.subdir("gnupg")
            imported = self._prepare_home(home, keyring)
            if not imported:
                return SignatureResult(SignatureStatus.UNAVAILABLE, detail="no keys could be imported")

            try:
                proc = self._gpg(
                    home, "--status-fd", "1", "--verify", str(signature), str(data)
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                return SignatureResult(SignatureStatus.UNAVAILABLE, detail=f"gpg failed to run: {exc}")

        result = parse_status(proc.stdout)
        logger.debug("gpg verify %s: %s %s", data.name, result.status, result.detail)
        return result

    # ── Internals ───────────────────────────────────────────────

    def _prepare_home(self, home: Path, keyring: str) -> int:
        keybox_dir = self.keyring_path(keyring) / "keyring"
        if (keybox_dir / "pubring.kbx").is_file():
            for item in keybox_dir.iterdir():
                if item.is_file():
                    shutil.copy2(item, home / item.name)
            return 1

        imported = 0
        for key_file in self.key_files(keyring):
            try:
                proc = self._gpg(home, "--import", str(key_file))
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning("Failed to import GPG key %s: %s", key_file.name, exc)
                continue
            if proc.returncode == 0:
                imported += 1
            else:
                logger.warning("Failed to import GPG key %s: %s", key_file.name, proc.stderr.strip())
        logger.debug("Imported %d GPG keys for %s", imported, keyring)
        return imported

    def _gpg(self, home: Path, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = [self.gpg_binary, "--homedir", str(home), "--batch", "--no-tty", *args]
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=False,
        )


class _DetachedSignatureSource:
    """Shared plumbing: keyring selection, signature URLs and download."""

    def __init__(
        self,
        tool: ToolSpec,
        spec: GpgSpec,
        verifier: GpgVerifier,
        *,
        timeout: float = 30.0,
    ):
        self.tool = tool
        self.spec = spec
        self.verifier = verifier
        self.timeout = timeout

    @property
    def keyring(self) -> str:
        return self.spec.keyring or self.tool.name

    @property
    def usable(self) -> bool:
        return self.verifier.available and self.verifier.has_keys(self.keyring)

    def template_values(self, version: str, platform: Platform) -> dict[str, str]:
        values = template_vars(self.tool, version, platform)
        values["url"] = self.tool.url.format(**values)
        values["filename"] = values["url"].split("?", 1)[0].rsplit("/", 1)[-1]
        return values

    def signature_urls(self, version: str, platform: Platform) -> list[str]:
        values = self.template_values(version, platform)
        return [template.format(**values) for template in self.spec.signature_templates]

    def _fetch_signature(
        self, version: str, platform: Platform, executor: RetryExecutor
    ) -> tuple[str, bytes | None]:
        for url in self.signature_urls(version, platform):
            try:
                payload = executor.execute(
                    lambda url=url: http.fetch_bytes(url, timeout=self.timeout),
                    description=f"fetch signature {url}",
                )
            except PermanentError:
                continue
            return url, payload
        return "", None

    def _check(self, result: SignatureResult, subject: str, version: str, signature_url: str) -> bool:
        """True on a good signature; raise on a bad one."""
        if result.status == SignatureStatus.BAD:
            raise SignatureInvalid(
                f"GPG signature verification FAILED for {subject}",
                hint="The file or its signature has been tampered with, or the keyring is wrong.",
                context={"tool": self.tool.name, "version": version, "signature": signature_url, "detail": result.detail},
            )
        if not result.ok:
            logger.warning("GPG tier skipped for %s %s: %s", self.tool.name, version, result.detail)
            return False
        logger.info("✓ Good signature on %s from %s", subject, result.signer or "trusted key")
        return True


class SignedManifestSource(_DetachedSignatureSource):
    """GPG-tier source: a signed manifest listing the artifact's digest."""

    def manifest_url(self, version: str, platform: Platform) -> str:
        return self.template_values(version, platform)["manifest"]

    def template_values(self, version: str, platform: Platform) -> dict[str, str]:
        values = super().template_values(version, platform)
        values["manifest"] = (self.spec.manifest or "").format(**values)
        return values

    def describe(self, version: str, platform: Platform) -> str:
        return f"GPG-signed manifest {self.manifest_url(version, platform)}"

    def fetch(
        self,
        version: str,
        platform: Platform,
        filename: str,
        *,
        executor: RetryExecutor | None = None,
    ) -> Digest | None:
        """Digest for ``filename`` from a verified manifest, or None.

        Raises:
            SignatureInvalid: The signature exists and gpg rejects it.
            NetworkExhausted: Transient failures outlasted the retry budget.
        """
        if not self.usable:
            logger.debug("GPG tier unavailable for %s (no gpg or no keys)", self.tool.name)
            return None

        executor = executor or RetryExecutor()
        manifest_url = self.manifest_url(version, platform)

        try:
            manifest = executor.execute(
                lambda: http.fetch_bytes(manifest_url, timeout=self.timeout),
                description=f"fetch manifest {manifest_url}",
            )
        except PermanentError as exc:
            logger.debug("Signed manifest unavailable: %s", exc)
            return None

        signature_url, signature = self._fetch_signature(version, platform, executor)
        if signature is None:
            logger.debug("No signature found for %s", manifest_url)
            return None

        with SecureWorkspace.create(prefix="devfetch-sig-", base_dir=self.verifier.workspace_dir) as ws:
            manifest_path = ws.file("manifest")
            signature_path = ws.file("manifest.sig")
            manifest_path.write_bytes(manifest)
            signature_path.write_bytes(signature)
            result = self.verifier.verify(manifest_path, signature_path, self.keyring)

        if not self._check(result, manifest_url, version, signature_url):
            return None

        try:
            return find_manifest_digest(manifest.decode("utf-8", errors="replace"), filename)
        except ValueError as exc:
            logger.warning("Signed manifest %s is ambiguous: %s", manifest_url, exc)
            return None


class SignedArtifactSource(_DetachedSignatureSource):
    """GPG-tier source: a detached signature over the artifact itself.

    No digest exists before the download, so version probing only asks
    whether a signature is published; the signature is checked against
    the downloaded file before it leaves the engine.
    """

    def describe(self, version: str, platform: Platform) -> str:
        urls = self.signature_urls(version, platform)
        return f"GPG-signed artifact {urls[0] if urls else ''}".rstrip()

    def signature_published(
        self, version: str, platform: Platform, *, executor: RetryExecutor | None = None
    ) -> bool:
        """Whether a signature exists that this host could check."""
        if not self.usable:
            return False
        _, signature = self._fetch_signature(version, platform, executor or RetryExecutor())
        return signature is not None

    def verify(
        self,
        path: Path,
        version: str,
        platform: Platform,
        *,
        executor: RetryExecutor | None = None,
    ) -> bool:
        """Check the vendor signature over the downloaded ``path``.

        Returns False when the signature cannot be checked (no gpg, no
        keys, nothing published, unknown signer).

        Raises:
            SignatureInvalid: gpg rejected the signature.
            NetworkExhausted: Transient failures outlasted the retry budget.
        """
        if not self.usable:
            logger.debug("GPG tier unavailable for %s (no gpg or no keys)", self.tool.name)
            return False

        signature_url, signature = self._fetch_signature(version, platform, executor or RetryExecutor())
        if signature is None:
            logger.debug("No artifact signature published for %s %s", self.tool.name, version)
            return False

        with SecureWorkspace.create(prefix="devfetch-sig-", base_dir=self.verifier.workspace_dir) as ws:
            signature_path = ws.file(f"{path.name}.sig")
            signature_path.write_bytes(signature)
            result = self.verifier.verify(path, signature_path, self.keyring)

        return self._check(result, path.name, version, signature_url)
