"""Locate the signature and n-parameter transforms in a player script.

All knowledge about how the upstream player is laid out lives in this module.
Each target (signature, n) has an ordered list of matcher strategies; each
strategy proposes candidate function names with a confidence score. The first
strategy that yields a confident candidate decides, and a tie between distinct
names is reported as an ambiguity instead of being guessed.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import AmbiguousMatch, PatternNotFound
from .jsscan import cut_after_js, iter_identifiers, read_expression
from .models import CipherFragments, ScriptFragment

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5
MAX_DEPENDENCY_DEPTH = 3

_NAME = r"[a-zA-Z0-9_$]+"

JS_RESERVED = frozenset("""
    break case catch class const continue debugger default delete do else export extends
    finally for function if import in instanceof let new return super switch this throw
    try typeof var void while with yield null true false undefined NaN Infinity arguments
    Array Boolean Date Error EvalError JSON Math Number Object RangeError RegExp String
    Symbol TypeError decodeURIComponent encodeURIComponent escape unescape isFinite isNaN
    parseFloat parseInt window document self globalThis console
""".split())


@dataclass(frozen=True)
class Candidate:
    """A function name proposed by a matcher. `index` is set for `name[index]` indirections."""
    name: str
    confidence: float
    matcher: str
    index: Optional[int] = None

    @property
    def label(self) -> str:
        return self.name if self.index is None else f"{self.name}[{self.index}]"


@dataclass(frozen=True)
class FunctionSource:
    name: str
    params: Tuple[str, ...]
    body: str

    def as_var(self) -> str:
        return f"var {self.name}=function({','.join(self.params)}){self.body};"


class Matcher:
    """Strategy proposing candidate functions for one target."""

    name = "matcher"

    def candidates(self, script: str) -> List[Candidate]:
        raise NotImplementedError


class RegexMatcher(Matcher):
    """Call-site patterns; each pattern must define a `name` group and may define `idx`."""

    def __init__(self, name: str, patterns: Sequence[Tuple[str, float]]):
        self.name = name
        self.patterns = [(re.compile(pattern), confidence) for pattern, confidence in patterns]

    def candidates(self, script):
        found = []
        for pattern, confidence in self.patterns:
            for match in pattern.finditer(script):
                groups = match.groupdict()
                index = int(groups["idx"]) if groups.get("idx") else None
                found.append(Candidate(groups["name"], confidence, self.name, index))
        return found


_SPLIT_JOIN_RE = re.compile(
    r"(?:^|[^\w$.])(?P<name>[a-zA-Z0-9_$]{2,})\s*=\s*function\(\s*(?P<arg>[a-zA-Z0-9_$]+)\s*\)\s*\{\s*"
    r"(?P=arg)\s*=\s*(?P=arg)\.split\(\s*(?:\"\"|'')\s*\)\s*;"
    r"(?P<calls>(?:\s*[a-zA-Z0-9_$]+(?:\.[a-zA-Z0-9_$]+|\[[^()]*?\])\(\s*(?P=arg)\s*,\s*\d+\s*\)\s*;)+)"
    r"\s*return\s+(?P=arg)\.join\(\s*(?:\"\"|'')\s*\)\s*\}"
)


class SplitJoinMatcher(Matcher):
    """Structural match: split, a fixed run of helper calls, join."""

    name = "split-join-body"

    def __init__(self, confidence: float = 0.8):
        self.confidence = confidence

    def candidates(self, script):
        found = []
        for match in _SPLIT_JOIN_RE.finditer(script):
            helpers = _helper_objects(match.group("calls"), match.group("arg"))
            if len(helpers) == 1:
                found.append(Candidate(match.group("name"), self.confidence, self.name))
        return found


_FUNCTION_HEAD_RE = re.compile(
    r"(?:^|[^\w$.])(?P<name>[a-zA-Z0-9_$]{2,})\s*=\s*function\(\s*(?P<arg>[a-zA-Z0-9_$]+)\s*\)\s*(?=\{)")


class ThrottleBodyMatcher(Matcher):
    """Structural match for the n transform: splits its argument and guards with try/catch."""

    name = "throttle-body"

    def candidates(self, script):
        found = []
        for match in _FUNCTION_HEAD_RE.finditer(script):
            preview = script[match.end():match.end() + 200]
            if ".split(" not in preview:
                continue
            body = cut_after_js(script[match.end():])
            if body is None:
                continue
            if "enhanced_except_" in body or "_w8_" in body:
                found.append(Candidate(match.group("name"), 0.7, self.name))
            elif "catch(" in body and re.search(r"return\s+[a-zA-Z0-9_$]+\.join\(\s*(?:\"\"|'')\s*\)", body):
                found.append(Candidate(match.group("name"), 0.55, self.name))
        return found


SIGNATURE_CALL_SITES = RegexMatcher("signature-call-site", [
    (r"\b(?P<var>[a-zA-Z0-9_$]+)&&\((?P=var)=(?P<name>[a-zA-Z0-9_$]{2,})\(decodeURIComponent\((?P=var)\)\)", 1.0),
    (r"\b[cs]\s*&&\s*[adf]\.set\([^,]+\s*,\s*encodeURIComponent\s*\(\s*(?P<name>[a-zA-Z0-9$]+)\(", 0.9),
    (r"\b[a-zA-Z0-9]+\s*&&\s*[a-zA-Z0-9]+\.set\([^,]+\s*,\s*encodeURIComponent\s*\(\s*(?P<name>[a-zA-Z0-9$]+)\(", 0.9),
    (r"\bm=(?P<name>[a-zA-Z0-9$]{2,})\(decodeURIComponent\(h\.s\)\)", 0.9),
])

N_CALL_SITES = RegexMatcher("n-call-site", [
    (r"\(\s*(?P<var>[a-zA-Z0-9_$]+)\s*=\s*[a-zA-Z0-9_$]+\.get\(\s*\"n\"\s*\)\s*\)\s*&&\s*\(\s*(?P=var)\s*=\s*"
     r"(?P<name>[a-zA-Z0-9_$]+)(?:\[(?P<idx>\d+)\])?\(\s*(?P=var)\s*\)", 1.0),
    (r"(?P<b>[a-zA-Z0-9_$]+)=(?:\"n+\"\[[a-zA-Z0-9.+$]+\]|String\.fromCharCode\(110\)),"
     r"(?P<c>[a-zA-Z0-9_$]+)=[a-zA-Z0-9_$]+\.get\((?P=b)\)\)&&\((?P=c)=(?P<name>[a-zA-Z0-9_$]+)"
     r"(?:\[(?P<idx>\d+)\])?\((?P=c)\)", 0.9),
    (r"null\)&&\([a-zA-Z]=(?P<name>[_a-zA-Z0-9$]+)\[(?P<idx>\d+)\]\([a-zA-Z0-9]\)", 0.7),
])

DEFAULT_SIGNATURE_MATCHERS = (SIGNATURE_CALL_SITES, SplitJoinMatcher())
DEFAULT_N_MATCHERS = (N_CALL_SITES, ThrottleBodyMatcher())

_TYPEOF_GUARD_RE = re.compile(
    r";\s*if\s*\(\s*typeof\s+[a-zA-Z0-9_$]+\s*===?\s*(?:\"undefined\"|'undefined'|[a-zA-Z0-9_$]+\[\d+\])\s*\)"
    r"\s*return\s+[a-zA-Z0-9_$]+;")

_SIGNATURE_PRIMITIVES = (
    re.compile(r"\.reverse\(\)"),
    re.compile(r"\.splice\(\s*0\s*,"),
    re.compile(r"%\s*[a-zA-Z0-9_$]+\.length"),
)


def _helper_objects(calls: str, arg: str) -> Set[str]:
    pattern = re.compile(
        r"(?P<obj>[a-zA-Z0-9_$]+)(?:\.[a-zA-Z0-9_$]+|\[[^()]*?\])\(\s*" + re.escape(arg) + r"\s*,")
    return {m.group("obj") for m in pattern.finditer(calls) if m.group("obj") != arg}


def _declared_names(source: str) -> Set[str]:
    names = set()
    for params in re.findall(r"function\s*[a-zA-Z0-9_$]*\s*\(([^)]*)\)", source):
        names.update(p.strip() for p in params.split(",") if p.strip())
    names.update(re.findall(r"\b(?:var|let|const)\s+([a-zA-Z_$][\w$]*)", source))
    names.update(re.findall(r",\s*([a-zA-Z_$][\w$]*)\s*=(?!=)", source))
    names.update(re.findall(r"\bcatch\s*\(\s*([a-zA-Z_$][\w$]*)", source))
    names.update(re.findall(r"\bfunction\s+([a-zA-Z_$][\w$]*)", source))
    return names


def free_identifiers(source: str) -> List[str]:
    """Identifiers the fragment uses without declaring, in first-use order."""
    declared = _declared_names(source)
    seen = []
    for name, is_property in iter_identifiers(source):
        if is_property or name in JS_RESERVED or name in declared or name in seen:
            continue
        seen.append(name)
    return seen


def find_function(script: str, name: str) -> Optional[FunctionSource]:
    """First definition of `name` as `name=function(...)` or `function name(...)`."""
    escaped = re.escape(name)
    patterns = (
        rf"(?:^|[^\w$.])(?:var\s+)?{escaped}\s*=\s*function\s*\((?P<params>[^)]*)\)\s*(?=\{{)",
        rf"(?:^|[^\w$.])function\s+{escaped}\s*\((?P<params>[^)]*)\)\s*(?=\{{)",
    )
    for pattern in patterns:
        match = re.search(pattern, script)
        if not match:
            continue
        body = cut_after_js(script[match.end():])
        if body is None:
            continue
        params = tuple(p.strip() for p in match.group("params").split(",") if p.strip())
        return FunctionSource(name, params, body)
    return None


def find_definition(script: str, name: str) -> Optional[str]:
    """Top-level definition of `name` as a standalone `var` statement, if any."""
    escaped = re.escape(name)
    match = re.search(rf"(?:^|[^\w$.])var\s+{escaped}\s*=\s*(?!=)", script)
    if match:
        value = read_expression(script, match.end())
        if value:
            return f"var {name}={value};"
    function = find_function(script, name)
    if function is not None:
        return function.as_var()
    return None


class CipherSynthesizer:
    """Builds minimal self-contained fragments for the signature and n transforms."""

    def __init__(self, signature_matchers: Optional[Iterable[Matcher]] = None,
                 n_matchers: Optional[Iterable[Matcher]] = None):
        self.signature_matchers = tuple(signature_matchers or DEFAULT_SIGNATURE_MATCHERS)
        self.n_matchers = tuple(n_matchers or DEFAULT_N_MATCHERS)

    def synthesize(self, script_text: str) -> CipherFragments:
        """Return both fragments or raise PatternNotFound / AmbiguousMatch."""
        if not script_text:
            raise PatternNotFound("player script is empty")
        signature = self._locate("signature", self.signature_matchers, script_text, self._signature_fragment)
        n_transform = self._locate("n", self.n_matchers, script_text, self._n_fragment)
        return CipherFragments(signature=signature, n_transform=n_transform)

    def _locate(self, target: str, matchers: Sequence[Matcher], script: str,
                build: Callable[[str, Candidate], ScriptFragment]) -> ScriptFragment:
        failure = None
        for matcher in matchers:
            found = [c for c in matcher.candidates(script) if c.confidence >= MIN_CONFIDENCE]
            if not found:
                logger.debug(f"{target}: matcher {matcher.name} found nothing")
                continue
            best = max(c.confidence for c in found)
            top = {}
            for candidate in found:
                if candidate.confidence == best:
                    top.setdefault((candidate.name, candidate.index), candidate)
            if len(top) > 1:
                raise AmbiguousMatch(target, [c.label for c in top.values()])
            chosen = next(iter(top.values()))
            logger.debug(f"{target}: matcher {matcher.name} chose {chosen.label} (confidence {best:.2f})")
            try:
                return build(script, chosen)
            except PatternNotFound as exc:
                logger.debug(f"{target}: candidate {chosen.label} unusable: {exc}")
                failure = exc
        if failure is not None:
            raise failure
        raise PatternNotFound(f"no {target} transform candidate found in player script")

    def _signature_fragment(self, script: str, candidate: Candidate) -> ScriptFragment:
        function = find_function(script, candidate.name)
        if function is None or not function.params:
            raise PatternNotFound(f"definition of signature function {candidate.name} not found")

        helpers = _helper_objects(function.body, function.params[0])
        if len(helpers) != 1:
            raise PatternNotFound(f"signature function {candidate.name} does not call exactly one helper object")
        helper = helpers.pop()

        match = re.search(rf"(?:^|[^\w$.])(?:var\s+)?{re.escape(helper)}\s*=\s*(?=\{{)", script)
        helper_body = cut_after_js(script[match.end():]) if match else None
        if helper_body is None:
            raise PatternNotFound(f"helper object {helper} not found")
        if not any(p.search(helper_body) for p in _SIGNATURE_PRIMITIVES):
            raise PatternNotFound(f"helper object {helper} has no reverse/splice/swap primitive")

        core = f"var {helper}={helper_body};\n{function.as_var()}"
        source = self._with_dependencies(script, core, {helper, candidate.name})
        return ScriptFragment(entry=candidate.name, source=source)

    def _n_fragment(self, script: str, candidate: Candidate) -> ScriptFragment:
        name = candidate.name
        if candidate.index is not None:
            match = re.search(rf"(?:^|[^\w$.])var\s+{re.escape(name)}\s*=\s*\[(?P<items>[^\]]+)\]", script)
            if not match:
                raise PatternNotFound(f"n function array {name} not found")
            items = [item.strip() for item in match.group("items").split(",")]
            if candidate.index >= len(items) or not re.fullmatch(_NAME, items[candidate.index]):
                raise PatternNotFound(f"n function array {name} has no entry {candidate.index}")
            name = items[candidate.index]

        function = find_function(script, name)
        if function is None or not function.params:
            raise PatternNotFound(f"definition of n function {name} not found")

        core = _TYPEOF_GUARD_RE.sub(";", function.as_var())
        source = self._with_dependencies(script, core, {name})
        return ScriptFragment(entry=name, source=source)

    def _with_dependencies(self, script: str, core: str, defined: Set[str]) -> str:
        """Prepend top-level definitions referenced by `core`, transitively."""
        seen = set(defined)
        emitted = []
        frontier = [core]
        for _ in range(MAX_DEPENDENCY_DEPTH):
            next_frontier = []
            for chunk in frontier:
                for name in free_identifiers(chunk):
                    if name in seen:
                        continue
                    seen.add(name)
                    definition = find_definition(script, name)
                    if definition is None:
                        continue
                    emitted.append(definition)
                    next_frontier.append(definition)
            if not next_frontier:
                break
            frontier = next_frontier
        if emitted:
            logger.debug(f"fragment pulls in {len(emitted)} dependencies")
        return "\n".join(list(reversed(emitted)) + [core])
