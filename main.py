from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from InquirerPy import inquirer

from experiments.payroll_ladder import run_model_ladder
from payroll_pooling.config import DEFAULT_CACHE_ROOT, DEFAULT_CREDIBLE_INTERVAL, DEFAULT_OUTPUT_ROOT
from payroll_pooling.estimation import FitOptions
from payroll_pooling.modeling import get_model, list_available_models

app = typer.Typer()


@app.command("fit")
def fit_ladder(
    data: Path = typer.Argument(..., exists=True, dir_okay=False, help="Cleaned payroll table (CSV or Parquet)."),
    models: List[str] = typer.Option([], "--model", "-m", help="Model to fit; repeat for several (default: all)."),
    pick: bool = typer.Option(False, "--pick", help="Choose models interactively."),
    method: str = typer.Option("likelihood", "--method", help="Estimation strategy: likelihood or posterior."),
    reml: bool = typer.Option(True, "--reml/--ml", help="Restricted or full maximum likelihood."),
    seed: int = typer.Option(20240101, "--seed", help="Random seed for restarts and sampling."),
    draws: int = typer.Option(1000, "--draws", help="Posterior draws per chain."),
    tune: int = typer.Option(1000, "--tune", help="Tuning steps per chain."),
    chains: int = typer.Option(4, "--chains", help="Independent chains (posterior) per model."),
    credible_interval: float = typer.Option(DEFAULT_CREDIBLE_INTERVAL, "--interval", help="Interval probability."),
    workers: int = typer.Option(1, "--workers", help="Models fitted in parallel processes."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds allowed per model fit."),
    cache_root: Path = typer.Option(
        DEFAULT_CACHE_ROOT,
        "--cache-root",
        exists=False,
        file_okay=False,
        dir_okay=True,
        writable=True,
        help="Directory holding cached fits.",
    ),
    no_cache: bool = typer.Option(False, "--no-cache", help="Always refit, never read or write the cache."),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        file_okay=False,
        dir_okay=True,
        help=f"Directory for CSV reports (e.g. {DEFAULT_OUTPUT_ROOT}).",
    ),
    tag: Optional[str] = typer.Option(None, "--tag", help="Report folder suffix (defaults to timestamp)."),
) -> None:
    """
    Fit the model ladder to a cleaned payroll table and rank the models.
    """
    selected = list(models)
    if pick:
        selected = inquirer.checkbox(
            message="Select models to fit:",
            choices=list(list_available_models()),
            validate=lambda result: len(result) >= 1,
            invalid_message="Select at least one model.",
        ).execute()

    try:
        for key in selected:
            get_model(key)
        options = FitOptions(
            method=method,
            random_seed=seed,
            reml=reml,
            draws=draws,
            tune=tune,
            chains=chains,
            credible_interval=credible_interval,
            timeout=timeout,
        )
        options.validate()
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    table, outcome = run_model_ladder(
        data,
        models=selected or None,
        options=options,
        max_workers=workers,
        cache_root=None if no_cache else cache_root,
    )
    typer.echo(table.to_frame().to_string(index=False))
    if table.failures:
        typer.echo("\nFailed fits:")
        typer.echo(table.failures_frame().to_string(index=False))

    if output:
        run_tag = tag or datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        report_dir = output / run_tag
        report_dir.mkdir(parents=True, exist_ok=True)
        table.to_frame().to_csv(report_dir / "comparison.csv", index=False)
        if table.failures:
            table.failures_frame().to_csv(report_dir / "failures.csv", index=False)
        for result in outcome.results:
            result.fixed_effects_frame().to_csv(report_dir / f"{result.model}_fixed.csv", index=False)
            if result.group_effects:
                result.group_effects_frame().to_csv(report_dir / f"{result.model}_groups.csv", index=False)
        print(f"[reports] Saved comparison and effects under {report_dir}")


@app.command("models")
def models() -> None:
    """
    List the registered models and their terms.
    """
    for key in list_available_models():
        spec = get_model(key)
        typer.echo(f"{key:<20} {spec.formula()}")


if __name__ == "__main__":
    app()
