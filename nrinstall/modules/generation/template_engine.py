"""
Template Script Generator

Resolves and renders install / uninstall / verify / rollback scripts from a
layered template hierarchy under TEMPLATES_DIR:

    {integration}/{os}/{version}.sh
    {integration}/{os}.sh
    {integration}/default.sh
    generic.sh

Non-install operations use the same hierarchy with a ``.{operation}.sh``
suffix (``redis/default.rollback.sh``, ``generic.verify.sh``). The first file
that exists wins; ``os`` defaults to "ubuntu" and ``version`` to "latest".

Template syntax:
    {{key}}                         scalar substitution (exact key match)
    {{quote key}}                   shell-quoted value
    {{lowercase key}} / {{uppercase key}}
    {{#if condition}} ... {{else}} ... {{/if}}

Placeholders whose key is missing or not a scalar are left untouched.
Block tags alone on a line consume that whole line.

Caches:
    compiled templates - FIFO, TEMPLATE_CACHE_SIZE entries
    rendered scripts   - LRU, SCRIPT_CACHE_SIZE entries, keyed on
                         (integration, operation, parameter fingerprint)
"""

import hashlib
import hmac
import json
import re
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import aiofiles

from nrinstall.core.config import settings
from nrinstall.core.exceptions import InstallerError, ScriptGenerationError, ValidationError
from nrinstall.core.logging_config import logger as default_logger
from nrinstall.core.security import (
    escape_shell_arg,
    is_sensitive_key,
    validate_integration_name,
    validate_path_segment,
)
from nrinstall.modules.generation.conditions import evaluate_condition


OPERATIONS = ("install", "uninstall", "verify", "rollback")
TEMPLATE_EXTENSION = ".sh"
DEFAULT_OS = "ubuntu"
DEFAULT_VERSION = "latest"

HELPERS = {
    "quote": escape_shell_arg,
    "lowercase": lambda value: str(value).lower(),
    "uppercase": lambda value: str(value).upper(),
}

_TAG = re.compile(r"\{\{(?P<body>[^{}]*)\}\}")


# =============================================================================
# Compiled template
# =============================================================================

@dataclass
class _Text:
    text: str


@dataclass
class _Placeholder:
    expression: str
    raw: str


@dataclass
class _IfBlock:
    condition: str
    body: List["_Node"] = field(default_factory=list)
    orelse: List["_Node"] = field(default_factory=list)


_Node = Union[_Text, _Placeholder, _IfBlock]


def _format_scalar(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


class CompiledTemplate:
    """A parsed template, renderable any number of times"""

    def __init__(self, nodes: List[_Node], name: str):
        self.nodes = nodes
        self.name = name

    def render(self, params: Dict[str, Any]) -> str:
        parts: List[str] = []
        self._render_nodes(self.nodes, params, parts)
        return "".join(parts)

    def _render_nodes(self, nodes: List[_Node], params: Dict[str, Any], parts: List[str]):
        for node in nodes:
            if isinstance(node, _Text):
                parts.append(node.text)
            elif isinstance(node, _Placeholder):
                parts.append(self._render_placeholder(node, params))
            else:
                branch = node.body if evaluate_condition(node.condition, params) else node.orelse
                self._render_nodes(branch, params, parts)

    @staticmethod
    def _render_placeholder(node: _Placeholder, params: Dict[str, Any]) -> str:
        words = node.expression.split()
        helper = None
        if len(words) == 2 and words[0] in HELPERS:
            helper, key = HELPERS[words[0]], words[1]
        elif len(words) == 1:
            key = words[0]
        else:
            return node.raw

        if key not in params and key.startswith("params."):
            key = key[len("params."):]
        if key not in params:
            return node.raw

        value = params[key]
        text = _format_scalar(value)
        if text is None:
            return node.raw
        return helper(text) if helper else text


def compile_template(source: str, name: str = "<template>") -> CompiledTemplate:
    """
    Parse template source into a node tree.

    Raises:
        ScriptGenerationError: unbalanced or unsupported block tags
    """
    root: List[_Node] = []
    # (open if-block or None, list receiving nodes, else seen)
    stack: List[Tuple[Optional[_IfBlock], List[_Node], bool]] = [(None, root, False)]
    position = 0

    for match in _TAG.finditer(source):
        start, end = match.start(), match.end()
        body = match.group("body").strip()
        is_block = body.startswith(("#", "/")) or body == "else"

        text_end = start
        if is_block:
            line_start = source.rfind("\n", 0, start) + 1
            line_end = source.find("\n", end)
            if line_end == -1:
                line_end = len(source)
            standalone = (
                line_start >= position
                and not source[line_start:start].strip()
                and not source[end:line_end].strip()
            )
            if standalone:
                text_end = line_start
                end = min(line_end + 1, len(source))

        if text_end > position:
            stack[-1][1].append(_Text(source[position:text_end]))
        position = end

        if body.startswith("#if"):
            condition = body[3:].strip()
            if not condition or not body[3:4].isspace():
                raise ScriptGenerationError(f"{name}: '{{{{{body}}}}}' needs a condition")
            block = _IfBlock(condition)
            stack[-1][1].append(block)
            stack.append((block, block.body, False))
        elif body == "else":
            block, _, else_seen = stack[-1]
            if block is None or else_seen:
                raise ScriptGenerationError(f"{name}: unexpected {{{{else}}}}")
            stack[-1] = (block, block.orelse, True)
        elif body == "/if":
            if len(stack) == 1:
                raise ScriptGenerationError(f"{name}: {{{{/if}}}} without matching {{{{#if}}}}")
            stack.pop()
        elif is_block:
            raise ScriptGenerationError(f"{name}: unsupported block tag '{{{{{body}}}}}'")
        else:
            stack[-1][1].append(_Placeholder(expression=body, raw=match.group(0)))

    if position < len(source):
        stack[-1][1].append(_Text(source[position:]))

    if len(stack) > 1:
        raise ScriptGenerationError(f"{name}: unclosed {{{{#if {stack[-1][0].condition}}}}}")

    return CompiledTemplate(root, name)


# =============================================================================
# Generator
# =============================================================================

@dataclass(frozen=True)
class RenderedScript:
    """Immutable rendered script plus the template that produced it"""
    text: str
    template_path: str
    integration: str
    operation: str


class TemplateScriptGenerator:
    """
    Renders scripts for integrations from the template hierarchy.

    Usage:
        generator = TemplateScriptGenerator()
        script = await generator.generate_script("redis", {"redis_host": "localhost"})
    """

    def __init__(
        self,
        templates_dir: Optional[Union[str, Path]] = None,
        cache_size: Optional[int] = None,
        script_cache_size: Optional[int] = None,
        logger=None
    ):
        self.templates_dir = Path(templates_dir) if templates_dir else settings.templates_path
        self.cache_size = cache_size or settings.TEMPLATE_CACHE_SIZE
        self.script_cache_size = script_cache_size or settings.SCRIPT_CACHE_SIZE
        self.logger = logger or default_logger

        self._templates: "OrderedDict[str, CompiledTemplate]" = OrderedDict()
        self._scripts: "OrderedDict[Tuple[str, str, str], RenderedScript]" = OrderedDict()
        # Per-process key so secret values never appear in cache keys
        self._fingerprint_key = secrets.token_bytes(32)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def template_candidates(
        self,
        integration: str,
        operation: str = "install",
        os_name: str = DEFAULT_OS,
        version: str = DEFAULT_VERSION
    ) -> List[Path]:
        """Candidate paths, most specific first"""
        suffix = TEMPLATE_EXTENSION if operation == "install" else f".{operation}{TEMPLATE_EXTENSION}"
        base = self.templates_dir
        return [
            base / integration / os_name / f"{version}{suffix}",
            base / integration / f"{os_name}{suffix}",
            base / integration / f"default{suffix}",
            base / f"generic{suffix}",
        ]

    def find_template(
        self,
        integration: str,
        operation: str = "install",
        params: Optional[Dict[str, Any]] = None
    ) -> Path:
        """
        First existing template for the request.

        Raises:
            ValidationError: integration / os / version is not a safe path segment
            ScriptGenerationError: no template at any level
        """
        params = params or {}
        if operation not in OPERATIONS:
            raise ScriptGenerationError(f"Unsupported operation: {operation}")
        if not validate_integration_name(integration, settings.MAX_INTEGRATION_NAME_LENGTH):
            raise ValidationError(f"Invalid integration name: {integration!r}")

        os_name = str(params.get("os") or DEFAULT_OS)
        version = str(params.get("version") or DEFAULT_VERSION)
        for label, segment in (("os", os_name), ("version", version)):
            if not validate_path_segment(segment):
                raise ValidationError(f"Invalid {label}: {segment!r}")

        root = self.templates_dir.resolve()
        for candidate in self.template_candidates(integration, operation, os_name, version):
            try:
                candidate.resolve().relative_to(root)
            except ValueError:
                continue
            if candidate.is_file():
                return candidate

        raise ScriptGenerationError(
            f"No {operation} template found for integration: {integration}",
            details={"integration": integration, "operation": operation, "os": os_name, "version": version}
        )

    async def get_compiled_template(self, path: Path) -> CompiledTemplate:
        """Compiled template from the FIFO cache, loading it on a miss"""
        key = str(path)
        cached = self._templates.get(key)
        if cached is not None:
            return cached

        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                source = await f.read()
        except OSError as e:
            raise ScriptGenerationError(f"Failed to load template {path}: {e}", cause=e)

        compiled = compile_template(source, name=path.relative_to(self.templates_dir).as_posix())

        # Evict the oldest inserted entry, not the least recently used
        if len(self._templates) >= self.cache_size:
            self._templates.popitem(last=False)
        self._templates[key] = compiled
        return compiled

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def fingerprint(self, params: Dict[str, Any]) -> str:
        """Stable parameter fingerprint; secret values enter only as keyed hashes"""
        def _scrub(value: Any, key: str = "") -> Any:
            if isinstance(value, dict):
                return {k: _scrub(v, k) for k, v in value.items()}
            if key and is_sensitive_key(key) and value is not None:
                digest = hmac.new(self._fingerprint_key, str(value).encode("utf-8"), hashlib.sha256)
                return f"secret:{digest.hexdigest()}"
            return value

        payload = json.dumps(_scrub(params), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    async def render(
        self,
        integration: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "install"
    ) -> RenderedScript:
        """
        Resolve and render one script.

        Raises:
            ScriptGenerationError: no template, or the template failed to render
            ValidationError: unsafe integration / os / version
        """
        params = dict(params or {})
        cache_key = (integration, operation, self.fingerprint(params))

        cached = self._scripts.get(cache_key)
        if cached is not None:
            self._scripts.move_to_end(cache_key)
            return cached

        try:
            path = self.find_template(integration, operation, params)
            template = await self.get_compiled_template(path)
            text = template.render(params)
        except InstallerError as e:
            self.logger.error(f"[TemplateEngine] Error generating {operation} script for {integration}: {e.message}")
            raise
        except Exception as e:
            self.logger.error(f"[TemplateEngine] Error generating {operation} script for {integration}: {e}")
            raise ScriptGenerationError(
                f"Failed to generate {operation} script for {integration}: {e}", cause=e
            )

        script = RenderedScript(
            text=text,
            template_path=path.relative_to(self.templates_dir).as_posix(),
            integration=integration,
            operation=operation,
        )

        self._scripts[cache_key] = script
        if len(self._scripts) > self.script_cache_size:
            self._scripts.popitem(last=False)

        self.logger.debug(f"[TemplateEngine] Rendered {script.template_path} for {integration}/{operation}")
        return script

    async def generate_script(
        self,
        integration: str,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "install"
    ) -> str:
        """Rendered script text"""
        return (await self.render(integration, params, operation)).text

    def clear_cache(self):
        self._templates.clear()
        self._scripts.clear()

    def cache_stats(self) -> Dict[str, int]:
        return {
            "templates": len(self._templates),
            "template_capacity": self.cache_size,
            "scripts": len(self._scripts),
            "script_capacity": self.script_cache_size,
        }
