# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from levelci.context import RunOptions
from levelci.dag import depths, validate
from levelci.errors import CIError
from levelci.runner import load_workflow, run_workflow
from levelci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "levelci_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  levelci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  levelci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  levelci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx, workflow_arg):
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """levelci - level-synchronized CI workflow runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=int, help="Max parallel jobs per level")
@click.option("--artifacts-dir", default=None, help="Artifact store (default: $LEVELCI_ARTIFACTS_DIR or .levelci/artifacts/<run-id>)")
@click.option("--workspace-root", default=None, help="Where executor workspaces are created (default: system temp dir)")
@click.option(
    "--keep-workspace/--no-keep-workspace",
    default=None,
    help="Keep workspaces, containers and pods after the run (default: $LEVELCI_KEEP_WORKSPACE=1)",
)
@click.pass_context
def run(ctx, workflow, workers, artifacts_dir, workspace_root, keep_workspace):
    """Run a levelci workflow."""
    console = get_console()
    wf = _load(ctx, workflow)

    options = RunOptions(
        artifacts_dir=artifacts_dir,
        workspace_root=workspace_root,
        keep_workspace=keep_workspace,
        max_workers=workers,
    )
    try:
        result = run_workflow(wf, options=options, console=console)
    except CIError as e:
        console.print_error("Workflow rejected", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if result.cancelled:
        console.print_info("Run cancelled")
    sys.exit(result.exit_code)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.pass_context
def plan(ctx, workflow):
    """Validate a workflow and print its levels without running anything."""
    console = get_console()
    wf = _load(ctx, workflow)
    try:
        levels = validate(wf)
    except CIError as e:
        console.print_error("Workflow rejected", str(e))
        sys.exit(1)

    depth = depths(wf.jobs)
    console.print_header(f"Workflow: {wf.name} ({len(wf.jobs)} jobs, {len(levels)} levels)")
    for index, names in enumerate(levels):
        console.print_level(index, names)
        for name in names:
            job = wf.job(name)
            needs = ", ".join(job.needs) or "-"
            console.print_info(
                f"  {name}: executor={job.executor.display_name} depth={depth[name]} "
                f"needs={needs} steps={len(job.steps)} if={job.condition}"
            )


if __name__ == "__main__":
    cli()
