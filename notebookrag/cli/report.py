# =============================================================================
# notebookrag/cli/report.py - CLI Report Generation
# =============================================================================
#
# Create report templates and generate sectioned reports from a notebook.
#
#   template  - Create a template from a JSON file
#   templates - List templates
#   generate  - Run a template against a notebook in-process and print
#               (or write) the assembled markdown
#   show      - Print a stored report run with per-section status
#   retry     - Regenerate one failed section of a stored run
#
# A run whose sections partly fail still completes with status "partial";
# the failed sections are listed and can be retried individually.
#
# Usage examples:
#   python -m notebookrag.cli report template --file feasibility.json
#   python -m notebookrag.cli report generate --notebook nb1 \
#       --template <id> --topic "Mixed-use redevelopment" --output report.md
#   python -m notebookrag.cli report retry --section <section-id>
# =============================================================================

"""Generate sectioned reports from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from notebookrag.cli._factory import build_from_environment, initialize_components
from notebookrag.models.report import ReportView, SectionSpec
from notebookrag.utils.errors import NotebookRAGError


def _print_view(view: ReportView) -> None:
    generation = view.generation
    print(f"Report {generation.id}: {generation.status.value} ({generation.progress}%)")
    for section in view.sections:
        indent = "    " if section.is_subsection else "  "
        detail = f"{section.word_count} words"
        if section.error:
            detail = section.error.message
        print(f"{indent}{section.status.value:<10} {section.name}  ({detail})  [{section.id}]")


async def _handle_template(args: argparse.Namespace, components: dict[str, Any]) -> int:
    raw = json.loads(Path(args.file).read_text(encoding="utf-8"))
    sections = [SectionSpec.model_validate(s) for s in raw.get("sections", [])]
    template = await components["report_coordinator"].create_template(
        raw.get("name", Path(args.file).stem),
        sections,
        description=raw.get("description", ""),
    )
    print(f"Created template '{template.name}': {template.id}")
    return 0


async def _handle_templates(args: argparse.Namespace, components: dict[str, Any]) -> int:
    templates = await components["report_store"].list_templates()
    if not templates:
        print("No report templates.")
    for template in templates:
        print(f"{template.id}  {template.name}  ({len(template.sections)} sections)")
    return 0


async def _handle_generate(args: argparse.Namespace, components: dict[str, Any]) -> int:
    parallel = args.parallel or components["config"]["reports"]["parallel"]
    view = await components["report_coordinator"].generate(
        args.template,
        args.notebook,
        args.topic,
        address=args.address,
        additional_context=args.context,
        parallel=parallel,
    )
    _print_view(view)

    content = view.generation.content or ""
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        print(f"\nWrote {args.output}")
    else:
        print()
        print(content)
    return 1 if view.failed_sections else 0


async def _handle_show(args: argparse.Namespace, components: dict[str, Any]) -> int:
    view = await components["report_coordinator"].get_report(args.report)
    _print_view(view)
    if args.content and view.generation.content:
        print()
        print(view.generation.content)
    return 0


async def _handle_retry(args: argparse.Namespace, components: dict[str, Any]) -> int:
    view = await components["report_coordinator"].retry_section(args.section)
    _print_view(view)
    return 1 if view.failed_sections else 0


_HANDLERS = {
    "template": _handle_template,
    "templates": _handle_templates,
    "generate": _handle_generate,
    "show": _handle_show,
    "retry": _handle_retry,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m notebookrag.cli report",
        description="Create report templates and generate reports.",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Report commands")

    template_parser = subparsers.add_parser("template", help="Create a template from JSON")
    template_parser.add_argument("--file", required=True, help="JSON with name and sections")

    subparsers.add_parser("templates", help="List templates")

    generate_parser = subparsers.add_parser("generate", help="Generate a report in-process")
    generate_parser.add_argument("--notebook", required=True, help="Notebook id")
    generate_parser.add_argument("--template", required=True, help="Template id")
    generate_parser.add_argument("--topic", required=True, help="Report topic")
    generate_parser.add_argument("--address", default=None, help="Site address")
    generate_parser.add_argument("--context", default=None, help="Additional context")
    generate_parser.add_argument("--parallel", action="store_true", help="Generate sections concurrently")
    generate_parser.add_argument("--output", "-o", default=None, help="Write markdown here")

    show_parser = subparsers.add_parser("show", help="Show a stored report")
    show_parser.add_argument("--report", required=True, help="Report generation id")
    show_parser.add_argument("--content", action="store_true", help="Also print the markdown")

    retry_parser = subparsers.add_parser("retry", help="Retry one section")
    retry_parser.add_argument("--section", required=True, help="Section id")

    return parser


async def _run(args: argparse.Namespace) -> int:
    components = build_from_environment(args.config)
    await initialize_components(components)
    try:
        return await _HANDLERS[args.command](args, components)
    except NotebookRAGError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for report generation."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
