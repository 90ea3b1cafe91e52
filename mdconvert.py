#!/usr/bin/env python3
"""
Convert a Markdown document, optionally through a dollar template.

Usage:
  python mdconvert.py doc.md -t html --template page.html -o doc.html --yaml-metadata

The document may start with a YAML metadata block:

    ---
    title: My *document*
    author:
      - name: Jo
    ---

Metadata strings are themselves Markdown and are converted to the output
format (a single paragraph is rendered inline). The converted body is
available to the template as $body$, the metadata under its own keys.

Filters are Python files defining process(doc, meta, to). They receive the
parsed document tree (an xml.etree.ElementTree element) before it is
serialised and may modify it in place.
"""
from __future__ import annotations

import argparse
import importlib.util
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import markdown
import yaml
from markdown.extensions import Extension
from markdown.treeprocessors import Treeprocessor

from dollartmpl import ParseFailure, compile_template

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# Python-Markdown output modes
WRITERS = ("html", "xhtml")

Filter = Callable[[Any, Dict[str, Any], str], None]


class ConversionError(ValueError):
    pass


@dataclass
class ConvertOptions:
    smart: bool = False
    hardbreaks: bool = False
    yaml_metadata: bool = False
    filters: List[Filter] = field(default_factory=list)
    extensions: List[str] = field(default_factory=list)

    def markdown_extensions(self) -> List[Any]:
        exts: List[Any] = list(self.extensions)
        if self.smart:
            exts.append("smarty")
        if self.hardbreaks:
            exts.append("nl2br")
        return exts

# -----------------------------
# Front matter
# -----------------------------
_FRONT_MATTER_RE = re.compile(
    r"\A---[ \t]*(?:\r\n|\r|\n)(.*?)^(?:---|\.\.\.)[ \t]*(?:\r\n|\r|\n|\Z)",
    re.DOTALL | re.MULTILINE,
)

def split_front_matter(text: str) -> Tuple[Optional[str], str]:
    """Return (yaml_text, body); yaml_text is None when there is no block.

    The block itself is replaced by its bare line breaks, so line numbers in
    the body stay the same.
    """
    m = _FRONT_MATTER_RE.match(text)
    if not m:
        return None, text
    blanked = re.sub(r"[^\r\n]+", "", m.group(0))
    return m.group(1), blanked + text[m.end():]

def parse_metadata(yaml_text: str) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        raise ConversionError(f"YAML parsing error:\n{e}") from e
    if not isinstance(data, dict):
        return {}
    return data

# -----------------------------
# Filters
# -----------------------------
def load_filter(path: str | Path) -> Filter:
    """Load a filter file and return its process(doc, meta, to) function."""
    p = Path(path)
    spec = importlib.util.spec_from_file_location(f"mdconvert_filter_{p.stem}", p)
    if spec is None or spec.loader is None:
        raise ConversionError(f"cannot load filter {p}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise ConversionError(f"cannot load filter {p}: {e}") from e
    func = getattr(module, "process", None)
    if not callable(func):
        raise ConversionError(f"filter {p} does not define a process() function")
    logger.debug("Loaded filter %s", p)
    return func


class _FilterProcessor(Treeprocessor):
    def __init__(self, md, filters: List[Filter], meta: Dict[str, Any], to: str):
        super().__init__(md)
        self.filters = filters
        self.meta = meta
        self.to = to

    def run(self, root):
        for f in self.filters:
            try:
                f(root, self.meta, self.to)
            except Exception as e:
                raise ConversionError(f"error running filter:\n{e}") from e


class FilterExtension(Extension):
    """Runs document filters once inline parsing is complete."""

    def __init__(self, filters: List[Filter], meta: Dict[str, Any], to: str):
        self.filters = filters
        self.meta = meta
        self.to = to
        super().__init__()

    def extendMarkdown(self, md):
        # Below the inline processor (20), above prettify (10).
        md.treeprocessors.register(
            _FilterProcessor(md, self.filters, self.meta, self.to), "doc_filters", 15
        )

# -----------------------------
# Conversion
# -----------------------------
_SINGLE_PARAGRAPH_RE = re.compile(r"\A<p>(.*)</p>\s*\Z", re.DOTALL)

def _render_metadata_string(md: markdown.Markdown, s: str) -> str:
    out = md.reset().convert(s)
    m = _SINGLE_PARAGRAPH_RE.match(out)
    if m and "</p>" not in m.group(1):
        return m.group(1).rstrip()
    return out

def convert_metadata(meta: Any, md: markdown.Markdown) -> Any:
    if isinstance(meta, dict):
        return {k: convert_metadata(v, md) for k, v in meta.items()}
    if isinstance(meta, (list, tuple)):
        return [convert_metadata(v, md) for v in meta]
    if isinstance(meta, str):
        return _render_metadata_string(md, meta)
    if meta is None or isinstance(meta, (bool, int, float)):
        return meta
    # dates and other YAML scalars
    return str(meta)

def convert(text: str, to: str = "html", options: Optional[ConvertOptions] = None) -> Tuple[str, Dict[str, Any]]:
    """Convert Markdown text to `to`; returns (body, metadata)."""
    if to not in WRITERS:
        raise ConversionError(f"unknown output format '{to}'")
    options = options or ConvertOptions()

    meta: Dict[str, Any] = {}
    if options.yaml_metadata:
        yaml_text, text = split_front_matter(text)
        if yaml_text is not None:
            meta = parse_metadata(yaml_text)
            logger.debug("Parsed metadata fields: %s", ", ".join(map(str, meta)))

    exts = options.markdown_extensions()
    body_exts = exts + [FilterExtension(options.filters, meta, to)] if options.filters else exts
    body = markdown.Markdown(extensions=body_exts, output_format=to).convert(text)

    meta_md = markdown.Markdown(extensions=exts, output_format=to)
    return body, convert_metadata(meta, meta_md)

def build_context(body: str, meta: Dict[str, Any]) -> Dict[str, Any]:
    context = dict(meta)
    context["body"] = body
    return context

# -----------------------------
# CLI
# -----------------------------
def _read(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")

def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="mdconvert", description="Convert Markdown, optionally through a template.")
    ap.add_argument("input", nargs="?", default="-", help="Markdown file to convert (default: stdin)")
    ap.add_argument("-t", "--to", default="html", choices=WRITERS, help="Output format")
    ap.add_argument("--template", default=None, help="Template file to render the result through")
    ap.add_argument("-o", "--output", default="-", help="Path to write output (default: stdout)")
    ap.add_argument("--smart", action="store_true", help="Use smart punctuation")
    ap.add_argument("--hardbreaks", action="store_true", help="Treat newlines as hard line breaks")
    ap.add_argument("--yaml-metadata", action="store_true", help="Parse a leading YAML metadata block")
    ap.add_argument("--filter", dest="filters", action="append", default=[], help="Filter file to run (repeatable)")
    ap.add_argument("--data-out", default=None, help="Optional path to write the template context as JSON")
    ap.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = ap.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    try:
        template = None
        if args.template:
            template = compile_template(_read(args.template))
        options = ConvertOptions(
            smart=args.smart,
            hardbreaks=args.hardbreaks,
            yaml_metadata=args.yaml_metadata,
            filters=[load_filter(f) for f in args.filters],
        )
        body, meta = convert(_read(args.input), args.to, options)
    except (ParseFailure, ConversionError, OSError) as e:
        print(f"{ap.prog}: {e}", file=sys.stderr)
        return 1

    if args.data_out:
        Path(args.data_out).write_text(json.dumps(meta, indent=2, ensure_ascii=False), encoding="utf-8")

    out = template.render(build_context(body, meta)) if template else body
    if args.output == "-":
        sys.stdout.write(out)
    else:
        Path(args.output).write_text(out, encoding="utf-8")
        print(f"Wrote: {args.output}", file=sys.stderr)
    return 0

if __name__ == "__main__":
    sys.exit(main())
