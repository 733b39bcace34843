"""
Command Line Interface
======================

``python -m ssr_gateway`` entry point.

Commands:
- render: Render one page to stdout
- check: Compile pages and their dependencies without executing them
- serve: Run the HTTP application with uvicorn
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import argparse
import json
import sys

import yaml

from ssr_gateway import __version__
from ssr_gateway.config.settings import Settings, get_settings
from ssr_gateway.core.errors import GatewayError, RenderRuntimeError
from ssr_gateway.core.gateway import SSRGateway, new_with_options


class PropsError(Exception):
    """Raised when the props argument cannot be loaded."""


def load_props(props_json: Optional[str], props_file: Optional[str]) -> Dict[str, Any]:
    """
    Load render props from a JSON string or a JSON/YAML file.

    Args:
        props_json: Inline JSON object
        props_file: Path to a .json, .yaml or .yml file

    Returns:
        Props mapping (empty when neither source is given)

    Raises:
        PropsError: If the source cannot be read or is not an object
    """
    if props_json is not None:
        try:
            props = json.loads(props_json)
        except json.JSONDecodeError as e:
            raise PropsError(f"--props is not valid JSON: {e}") from None
    elif props_file is not None:
        path = Path(props_file)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PropsError(f"cannot read props file {path}: {e.strerror or e}") from None
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                props = yaml.safe_load(text)
            else:
                props = json.loads(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise PropsError(f"cannot parse props file {path}: {e}") from None
    else:
        return {}

    if props is None:
        return {}
    if not isinstance(props, dict):
        raise PropsError(f"props must be an object, got {type(props).__name__}")
    return props


def _build_gateway(settings: Settings, args: argparse.Namespace, pool_size: int) -> SSRGateway:
    options = settings.gateway_options().model_dump()
    options["pool_size"] = pool_size
    if getattr(args, "source_dir", None):
        options["source_dir"] = args.source_dir
    if getattr(args, "timeout", None) is not None:
        options["render_timeout"] = args.timeout
    return new_with_options(options)


def _report(error: GatewayError, verbose: bool) -> None:
    print(f"error: {error}", file=sys.stderr)
    if verbose and isinstance(error, RenderRuntimeError) and error.details:
        print(error.details, file=sys.stderr, end="")


def cmd_render(args: argparse.Namespace, settings: Settings) -> int:
    """Render a page and write the HTML to stdout."""
    try:
        props = load_props(args.props, args.props_file)
    except PropsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    try:
        with _build_gateway(settings, args, pool_size=1) as gateway:
            html = gateway.render_sync(args.page, props)
    except GatewayError as e:
        _report(e, args.verbose)
        return 1

    sys.stdout.write(html)
    if not html.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    """Compile each page and report failures."""
    try:
        gateway = _build_gateway(settings, args, pool_size=1)
    except GatewayError as e:
        _report(e, args.verbose)
        return 1

    failures = 0
    with gateway:
        for page in args.pages:
            try:
                modules = gateway.preload(page)
            except GatewayError as e:
                failures += 1
                print(f"FAIL {page}: {e}")
                continue
            print(f"ok   {page} ({len(modules)} module{'s' if len(modules) != 1 else ''})")

    return 1 if failures else 0


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    """Run the HTTP application."""
    import uvicorn

    from ssr_gateway.api.main import create_app

    updates: Dict[str, Any] = {}
    if args.host:
        updates["host"] = args.host
    if args.port:
        updates["port"] = args.port
    if args.source_dir:
        updates["source_dir"] = Path(args.source_dir)
    if updates:
        settings = settings.model_copy(update=updates)

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ssr_gateway", description="Server-side rendering gateway for Python page modules"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    render_parser = subparsers.add_parser("render", help="Render a page to stdout")
    render_parser.add_argument("page", help="Page module path relative to the source directory")
    props_group = render_parser.add_mutually_exclusive_group()
    props_group.add_argument("--props", help="Props as a JSON object")
    props_group.add_argument("--props-file", help="Props from a .json or .yaml file")
    render_parser.add_argument("--source-dir", help="Page module root directory")
    render_parser.add_argument("--timeout", type=float, help="Render timeout in seconds")
    render_parser.add_argument("-v", "--verbose", action="store_true", help="Show page tracebacks")
    render_parser.set_defaults(handler=cmd_render)

    check_parser = subparsers.add_parser("check", help="Compile pages without rendering them")
    check_parser.add_argument("pages", nargs="+", help="Page module paths")
    check_parser.add_argument("--source-dir", help="Page module root directory")
    check_parser.add_argument("-v", "--verbose", action="store_true", help="Show page tracebacks")
    check_parser.set_defaults(handler=cmd_check)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument("--source-dir", help="Page module root directory")
    serve_parser.set_defaults(handler=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.handler(args, get_settings())
