"""Command-line interface for LevelForge using argparse."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional

from levelforge.core.config import ReconcilerConfig
from levelforge.io.records import load_scheme, save_scheme, scheme_to_dict
from levelforge.matching.combine import combine_scheme
from levelforge.review import AcceptingReviewer, DecliningReviewer, Reviewer
from levelforge.solvers.energy_fit import fit_level_energies
from levelforge.solvers.intensity_fit import fit_intensities
from levelforge.workflows.adopted_scheme import build_adopted_scheme


def _load_config(args: argparse.Namespace) -> ReconcilerConfig:
    data = json.loads(args.config.read_text()) if args.config else {}
    if args.strategy:
        data["match_strategy"] = args.strategy
    return ReconcilerConfig.from_dict(data)


def _reviewer(args: argparse.Namespace) -> Reviewer:
    if args.reviewer == "accept":
        return AcceptingReviewer(reference_dataset=args.reference)
    return DecliningReviewer()


def cmd_combine(args: argparse.Namespace) -> None:
    config = _load_config(args)
    combined = combine_scheme(load_scheme(args.input), config)
    print(combined.summary())
    if args.output:
        save_scheme(combined.scheme, args.output)
        print(f"Wrote combined scheme to {args.output}")


def cmd_fit(args: argparse.Namespace) -> None:
    config = _load_config(args)
    reviewer = _reviewer(args)
    combined = combine_scheme(load_scheme(args.input), config)
    scheme = combined.scheme
    scheme.renormalize_intensities(decay=config.decay_data)
    energy = fit_level_energies(scheme, reviewer, config)
    intensity = fit_intensities(scheme, reviewer, config)
    print(energy.summary())
    print()
    print(intensity.summary())


def cmd_adopt(args: argparse.Namespace) -> None:
    config = _load_config(args)
    result = build_adopted_scheme(load_scheme(args.input), _reviewer(args), config)
    print(result.summary())
    if args.output:
        payload = scheme_to_dict(result.adopted)
        payload["diagnostics"] = result.diagnostics
        payload["energy_fit"] = {
            "chi2": result.energy_fit.chi2,
            "dof": result.energy_fit.dof,
            "rank": result.energy_fit.rank,
            "n_unknowns": result.energy_fit.n_unknowns,
        }
        Path(args.output).write_text(json.dumps(payload, indent=2))
        print(f"Wrote adopted scheme to {args.output}")


def _add_common(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("input", type=Path, help="Level scheme JSON file")
    sub.add_argument("--config", type=Path, help="ReconcilerConfig JSON file")
    sub.add_argument("--strategy", choices=["rules", "cluster", "hybrid"], help="Level matching strategy")


def _add_review(sub: argparse.ArgumentParser) -> None:
    sub.add_argument(
        "--reviewer",
        choices=["decline", "accept"],
        default="decline",
        help="Answer to every outlier uncertainty increase",
    )
    sub.add_argument("--reference", help="Standard dataset for linear energy shifts")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nuclear level scheme reconciliation")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
    subparsers = parser.add_subparsers(dest="command", required=True)

    combine = subparsers.add_parser("combine", help="Match levels and transitions across datasets")
    _add_common(combine)
    combine.add_argument("--output", type=Path)
    combine.set_defaults(func=cmd_combine)

    fit = subparsers.add_parser("fit", help="Fit level energies and intensity scales")
    _add_common(fit)
    _add_review(fit)
    fit.set_defaults(func=cmd_fit)

    adopt = subparsers.add_parser("adopt", help="Build the adopted level scheme")
    _add_common(adopt)
    _add_review(adopt)
    adopt.add_argument("--output", type=Path)
    adopt.set_defaults(func=cmd_adopt)
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()
