"""Typer CLI entrypoints."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape

from depstage.cluster import Specialization, cluster
from depstage.config.settings import load_settings
from depstage.core.ast import expr_to_string
from depstage.core.codec import CodecError, decode_expr, decode_exprs, encode_expr
from depstage.core.errors import DepstageError
from depstage.eval.backend import BackendContext, ResidualBackend
from depstage.eval.loader import JsonModuleLoader
from depstage.eval.machine import StagedEvaluator
from depstage.eval.session import Session
from depstage.eval.svalue import Now
from depstage.eval.value import VBuiltin, VClosure, VType, to_python
from depstage.logging_utils import configure_logging

app = typer.Typer(name="depstage", help="Staged evaluator for constraint-typed expressions", add_completion=False)

console = Console()
err_console = Console(stderr=True)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CodecError(f"{path}: invalid JSON: {exc}") from exc


def _fail(exc: DepstageError) -> typer.Exit:
    logger.debug("cli.error type={}", type(exc).__name__)
    err_console.print(f"[red]Error:[/red] {exc}", markup=True, highlight=False)
    return typer.Exit(code=1)


@app.command()
def stage(
    file: Annotated[Path, typer.Argument(exists=True, dir_okay=False, help="JSON-encoded expression")],
    module_root: Annotated[Path | None, typer.Option("--module-root", help="Directory of JSON declaration files")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the result as JSON")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log staging events to stderr")] = False,
) -> None:
    """Stage an expression and print its constraint and residual code."""

    settings = load_settings(module_root)
    configure_logging(settings.log_filter, verbose=verbose)
    logger.debug("stage.file path={} module_root={}", str(file), str(settings.resolve_module_root()))

    try:
        expr = decode_expr(_read_json(file))
        session = Session(loader=JsonModuleLoader(settings.resolve_module_root()), settings=settings)
        evaluator = StagedEvaluator(session)
        context = BackendContext(evaluator, ResidualBackend())
        result = context.stage(expr)
        residual = context.generate(result)
    except DepstageError as exc:
        raise _fail(exc) from exc

    stage_name = "now" if isinstance(result, Now) else "later"
    if as_json:
        payload: dict[str, Any] = {
            "stage": stage_name,
            "constraint": str(result.constraint),
            "residual": encode_expr(residual),
        }
        if isinstance(result, Now) and not isinstance(result.value, (VClosure, VType, VBuiltin)):
            payload["value"] = to_python(result.value)
        console.print_json(json.dumps(payload), indent=settings.indent)
        return

    console.print(f"[bold]{stage_name.capitalize()}[/bold] : {escape(str(result.constraint))}", highlight=False)
    console.print(expr_to_string(residual), highlight=False, markup=False)


@app.command("cluster")
def cluster_command(
    file: Annotated[Path, typer.Argument(exists=True, dir_okay=False, help="JSON list of encoded expressions")],
    as_json: Annotated[bool, typer.Option("--json", help="Print the clusters as JSON")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log clustering events to stderr")] = False,
) -> None:
    """Group expressions into parameterized templates."""

    settings = load_settings()
    configure_logging(settings.log_filter, verbose=verbose)

    try:
        exprs = decode_exprs(_read_json(file))
    except DepstageError as exc:
        raise _fail(exc) from exc

    clusters = cluster([Specialization(i, e) for i, e in enumerate(exprs)], param_prefix=settings.param_prefix)

    if as_json:
        payload = [
            {
                "template": encode_expr(group.template),
                "parameters": group.parameters,
                "members": [{"index": m.key, "arguments": group.arguments[m.key]} for m in group.members],
            }
            for group in clusters
        ]
        console.print_json(json.dumps(payload), indent=settings.indent)
        return

    for number, group in enumerate(clusters):
        params = ", ".join(group.parameters)
        console.print(f"[bold]cluster {number}[/bold] ({params})", highlight=False)
        console.print(f"  {expr_to_string(group.template)}", highlight=False, markup=False)
        for member in group.members:
            args = ", ".join(json.dumps(v) for v in group.arguments[member.key])
            console.print(f"  #{member.key} ({args})", highlight=False, markup=False)


if __name__ == "__main__":
    app()
