"""
Command-line interface
"""
import sys
import json
import time
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.panel import Panel

from .auth import AuthContext
from .classifier import ShipmentClassifier
from .config import load_config
from .customer_rules import get_rules_grouped
from .errors import ClassificationError, FileParseError, RetryError
from .extractor import extract_candidates
from .file_parser import get_file_type, parse_file
from .llm_router import router_from_config
from .pipeline import TenderPipeline
from .retry import RETRY_PRESETS, retry
from .schema import CustomerProfile, ProcessingConfig
from .segmenter import segment_document
from .store import InMemoryStore

app = typer.Typer(help="Freight tender extraction: candidates, classification and learned customer rules")
console = Console()
logger = logging.getLogger(__name__)

CLI_ACTOR = AuthContext(user_id="cli", role="admin")


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console.print("[yellow]Verbose mode enabled[/yellow]")


def _load_config(config: Optional[str], llm: Optional[str], model: Optional[str]) -> ProcessingConfig:
    settings = load_config(config if config and Path(config).exists() else None)
    overrides = {}
    if llm:
        overrides["llm_provider"] = llm
    if model:
        overrides["llm_model"] = model
    if not overrides:
        return settings
    return ProcessingConfig.model_validate({**settings.model_dump(), **overrides})


def load_profile(path: Optional[str]) -> Optional[CustomerProfile]:
    """Customer profile from a JSON or YAML file"""
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f) if path.endswith(".json") else yaml.safe_load(f)
    return CustomerProfile.model_validate(data)


def _read_input(input_path: Path) -> tuple:
    """(text, source_type) for a document file or a plain text file"""
    data = input_path.read_bytes()
    result = parse_file(data, input_path.name)
    return result.text, ("file" if result.file_type in ("pdf", "docx") else "paste")


@app.command()
def extract(
    input_path: str = typer.Argument(..., help="Tender file (.pdf, .docx, .txt)"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Write JSON result to this file"),
    config: str = typer.Option("./config/example.yaml", "--config", "-c", help="Config file path"),
    customer: Optional[str] = typer.Option(None, "--customer", help="Customer profile (JSON or YAML)"),
    llm: Optional[str] = typer.Option(None, "--llm", help="LLM provider: none/ollama/openai"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LLM model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    debug: bool = typer.Option(False, "--debug", help="Log full prompts and responses"),
):
    """Extract candidates from a tender and optionally classify them"""
    _setup_logging(verbose or debug)

    path = Path(input_path)
    if not path.exists():
        console.print(f"[red]Error: input file does not exist {path}[/red]")
        sys.exit(1)

    settings = _load_config(config, llm, model)
    profile = load_profile(customer)

    start_time = time.time()
    try:
        text, source_type = _read_input(path)
    except FileParseError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        sys.exit(1)

    extraction = extract_candidates(text, profile)
    console.print(f"[green]📄 {path.name}: {len(extraction.candidates)} candidates[/green]")
    output = {
        "candidates": [c.model_dump() for c in extraction.candidates],
        "metadata": extraction.metadata.model_dump(),
        "llm_output": None,
    }

    router = router_from_config(settings)
    if router is not None and router.available:
        router.debug_mode = debug
        classifier = ShipmentClassifier(router)
        try:
            result = retry(
                lambda: classifier.classify_and_verify(text, extraction.candidates, profile, source_type),
                RETRY_PRESETS["openai"],
            )
            output["llm_output"] = result.shipment.model_dump()
            output["verification_warnings"] = [w.model_dump() for w in result.warnings]
            output["provenance"] = {k: v.model_dump() for k, v in result.provenance.items()}
            output["usage"] = result.usage.model_dump()
            console.print(f"[blue]🤖 Classified with {router.provider}/{router.model}: "
                          f"{result.usage.total_tokens} tokens, {len(result.warnings)} warnings[/blue]")
        except (ClassificationError, RetryError) as e:
            console.print(f"[yellow]⚠️  Classification failed, candidates only: {e.message}[/yellow]")
    elif settings.llm_provider != "none":
        console.print(f"[yellow]LLM provider {settings.llm_provider} is not configured, candidates only[/yellow]")

    console.print(f"   ⏱️  Processing time: {time.time() - start_time:.2f}s")
    _display_candidates(extraction.candidates)

    if out:
        with open(out, "w", encoding="utf-8") as f:
            json.dump(output, f, ensure_ascii=False, indent=2)
        console.print(f"[green]💾 Result saved: {out}[/green]")


@app.command()
def segment(
    input_path: str = typer.Argument(..., help="Tender file (.pdf, .docx, .txt)"),
):
    """Show the header and stop blocks of a tender"""
    path = Path(input_path)
    if not path.exists():
        console.print(f"[red]Error: input file does not exist {path}[/red]")
        sys.exit(1)

    text, _ = _read_input(path)
    result = segment_document(text)

    console.print(Panel.fit(
        f"[bold]Length:[/bold] {len(text)}\n"
        f"[bold]Header end:[/bold] {result.header_end}\n"
        f"[bold]Segments:[/bold] {len(result.segments)}",
        title=path.name
    ))

    table = Table(title="Segments")
    table.add_column("Type", style="cyan")
    table.add_column("Start", style="magenta")
    table.add_column("End", style="magenta")
    table.add_column("Preview")
    for seg in result.segments:
        preview = " ".join(seg.text.split())[:60]
        table.add_row(seg.type, str(seg.start_index), str(seg.end_index), preview)
    console.print(table)


@app.command()
def batch(
    input_dir: str = typer.Argument(..., help="Directory of tender files"),
    out: str = typer.Option("./out", "--out", "-o", help="Output directory"),
    config: str = typer.Option("./config/example.yaml", "--config", "-c", help="Config file path"),
    customer: Optional[str] = typer.Option(None, "--customer", help="Customer profile (JSON or YAML)"),
    llm: Optional[str] = typer.Option(None, "--llm", help="LLM provider: none/ollama/openai"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LLM model name"),
    pattern: str = typer.Option("*", "--pattern", "-p", help="File glob pattern"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Process a directory of tenders as one sequential batch"""
    _setup_logging(verbose)

    directory = Path(input_dir)
    if not directory.is_dir():
        console.print(f"[red]Error: not a directory {directory}[/red]")
        sys.exit(1)

    files = sorted(p for p in directory.glob(pattern) if p.is_file() and get_file_type(p.name))
    if not files:
        console.print(f"[yellow]Warning: no tender files match {pattern}[/yellow]")
        return

    settings = _load_config(config, llm, model)
    store = InMemoryStore()
    profile = load_profile(customer)
    if profile is not None:
        store.save_customer(profile)

    router = router_from_config(settings)
    pipeline = TenderPipeline(store, settings, router=router if router and router.available else None)

    console.print(f"[green]Found {len(files)} files[/green]")
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console
    ) as progress:
        task = progress.add_task(f"Processing {len(files)} files...", total=None)
        result = pipeline.upload_batch([(p.name, p.read_bytes()) for p in files], CLI_ACTOR,
                                       profile.id if profile else None)
        progress.update(task, description="Batch complete")

    out_path = Path(out)
    out_path.mkdir(parents=True, exist_ok=True)
    for item in result.items:
        if item.tender_id is None:
            continue
        run = store.latest_run(item.tender_id)
        output_file = out_path / f"{item.file_name}.json"
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump({
                "tender_id": item.tender_id,
                "state": item.state,
                "deduped": item.deduped,
                "candidates": [c.model_dump() for c in run.candidates] if run else [],
                "llm_output": run.llm_output.model_dump() if run and run.llm_output else None,
            }, f, ensure_ascii=False, indent=2)

    _display_batch_summary(result.items)


@app.command()
def rules(
    profile_path: str = typer.Argument(..., help="Customer profile (JSON or YAML)"),
):
    """List a customer's rules grouped by status"""
    profile = load_profile(profile_path)
    grouped = get_rules_grouped(profile)

    console.print(Panel.fit(
        f"[bold]{profile.name}[/bold] ({profile.code or profile.id})\n"
        + "\n".join(f"{status}: {len(items)}" for status, items in grouped.items()),
        title="Customer rules"
    ))

    for status, items in grouped.items():
        if not items:
            continue
        table = Table(title=status.capitalize())
        table.add_column("Type", style="cyan")
        table.add_column("Pattern")
        table.add_column("Target", style="magenta")
        table.add_column("Scope")
        table.add_column("Confidence")
        for rule in items:
            table.add_row(rule.rule_type, rule.pattern, rule.target_value, rule.scope or "-",
                          f"{rule.confidence:.2f}")
        console.print(table)


def _display_candidates(candidates) -> None:
    if not candidates:
        return
    table = Table(title="Candidates")
    table.add_column("Type", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_column("Subtype")
    table.add_column("Label")
    table.add_column("Confidence")
    for c in candidates:
        table.add_row(c.type, c.value, c.subtype or "-", c.label_hint or "-", c.confidence)
    console.print(table)


def _display_batch_summary(items: List) -> None:
    """Batch summary panel and per-file table"""
    failed = [i for i in items if i.state == "failed"]
    deduped = [i for i in items if i.deduped]

    console.print(Panel.fit(
        f"[bold]Batch complete![/bold]\n"
        f"Files: {len(items)}\n"
        f"Processed: {len(items) - len(failed)}\n"
        f"Duplicates: {len(deduped)}\n"
        f"Failed: {len(failed)}",
        title="Summary"
    ))

    table = Table(title="Files")
    table.add_column("File", style="cyan")
    table.add_column("State", style="magenta")
    table.add_column("Tender")
    table.add_column("Error", style="red")
    for item in items:
        table.add_row(item.file_name, item.state, item.tender_id or "-", item.error or "")
    console.print(table)


if __name__ == "__main__":
    app()
