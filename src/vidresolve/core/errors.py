"""Error taxonomy shared by every layer of the core."""

from typing import Dict, Iterable, Optional


class CoreError(Exception):
    """Base class for every error surfaced by the core."""

    layer = "core"

    def __str__(self):
        message = super().__str__()
        return f"[{self.layer}] {message}" if message else f"[{self.layer}] {type(self).__name__}"


# Transport

class TransportError(CoreError):
    layer = "transport"


class Rejected(TransportError):
    """Non-retryable HTTP status, or a retryable one that kept failing after every retry."""

    def __init__(self, status: int, url: str = ""):
        self.status = status
        self.url = url
        super().__init__(f"HTTP {status} for {url}" if url else f"HTTP {status}")


class TransportTimeout(TransportError):
    pass


class NetworkError(TransportError):
    pass


# Player config extraction

class ExtractionError(CoreError):
    layer = "extraction"


class StructureChanged(ExtractionError):
    """Expected anchors are missing from the page or API response."""


class Unplayable(ExtractionError):
    """The video is private, removed, age-gated or otherwise not playable."""

    def __init__(self, status: str, reason: str = ""):
        self.status = status
        self.reason = reason
        super().__init__(f"{status}: {reason}" if reason else status)


class Malformed(ExtractionError):
    """JSON that decodes but does not have the expected schema, or does not decode."""


class InvalidVideoId(ExtractionError):
    """Input is neither an 11 character video id nor a supported video URL."""


# Cipher synthesis and execution

class CipherError(CoreError):
    layer = "cipher"


class PatternNotFound(CipherError):
    pass


class AmbiguousMatch(CipherError):
    def __init__(self, target: str, candidates: Iterable[str]):
        self.target = target
        self.candidates = tuple(sorted(candidates))
        super().__init__(f"{target}: {len(self.candidates)} equally plausible candidates {list(self.candidates)}")


class CompileFailed(CipherError):
    pass


class EvalFailed(CipherError):
    pass


class MalformedCipher(EvalFailed):
    """A signatureCipher string without `s` or a usable `url`."""


# Manifests

class ManifestError(CoreError):
    layer = "manifest"


class ParseFailed(ManifestError):
    pass


class NoVariants(ManifestError):
    pass


# Segment crypto

class CryptoError(CoreError):
    layer = "crypto"


class InvalidPadding(CryptoError):
    pass


class KeyFetchFailed(CryptoError):
    pass


class UnsupportedMethod(CryptoError):
    """A key method other than AES-128 or NONE (e.g. SAMPLE-AES)."""


# Resolution

class AllFormatsUnresolved(CoreError):
    """Formats existed but every one of them failed to decode."""

    layer = "resolver"

    def __init__(self, unresolved: int, failures: Optional[Dict[int, str]] = None):
        self.unresolved = unresolved
        self.failures = dict(failures or {})
        super().__init__(f"all {unresolved} format entries failed to resolve")


class FormatNotFound(CoreError):
    layer = "resolver"
