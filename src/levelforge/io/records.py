"""
JSON ingest and export of typed level/transition records.

Input layout::

    {
      "schema_name": "levelforge.level_scheme",
      "nucid": "60NI",
      "datasets": [
        {"title": "...", "reference": "...",
         "levels": [
           {"energy": "1332.5", "denergy": "0.1", "jpi": "2+", "tag": "",
            "gammas": [{"energy": "1332.5", "denergy": "0.1",
                        "intensity": "100", "dintensity": "5",
                        "final_level": "", "expected_unobserved": false,
                        "placement_uncertain": false}]}
         ]}
      ]
    }

Numeric fields may be JSON numbers or strings; strings keep their raw text so
non-numeric uncertainty tokens (``LT``, ``AP``...) survive.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from levelforge.core.model import Level, LevelScheme, Transition
from levelforge.core.numeric import format_numeric

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "0.1.0"
SCHEME_SCHEMA: Dict[str, Any] = {
    "schema_name": "levelforge.level_scheme",
    "schema_version": SCHEMA_VERSION,
    "required_fields": ["datasets"],
    "required_dataset_fields": ["title", "levels"],
    "required_level_fields": ["energy"],
    "required_gamma_fields": ["energy"],
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ValueError(f"Expected a number or string, got {value!r}")
    return str(value)


def _require(record: Mapping[str, Any], keys: List[str], where: str) -> None:
    missing = [k for k in keys if k not in record]
    if missing:
        raise ValueError(f"{where}: missing required fields {missing}")


def scheme_from_dict(payload: Mapping[str, Any], resolve: bool = True) -> LevelScheme:
    """
    Build a :class:`LevelScheme` from a parsed JSON payload.

    Parameters
    ----------
    payload : mapping
        Decoded document (see module docstring).
    resolve : bool
        Resolve final levels of every dataset after loading.
    """
    _require(payload, SCHEME_SCHEMA["required_fields"], "scheme")
    scheme = LevelScheme(payload.get("nucid", ""))
    for d_index, d in enumerate(payload["datasets"]):
        _require(d, SCHEME_SCHEMA["required_dataset_fields"], f"dataset {d_index}")
        title = d["title"]
        nucid = d.get("nucid", scheme.nucid)
        scheme.add_dataset(title, d.get("reference", ""), nucid)
        for l_index, rec in enumerate(d["levels"]):
            _require(rec, SCHEME_SCHEMA["required_level_fields"], f"{title} level {l_index}")
            level = Level.from_fields(
                _text(rec["energy"]),
                title,
                _text(rec.get("denergy")),
                _text(rec.get("jpi")),
                _text(rec.get("tag")),
            )
            handle = scheme.add_level(level)
            for g_index, g in enumerate(rec.get("gammas", [])):
                _require(g, SCHEME_SCHEMA["required_gamma_fields"], f"{title} level {l_index} gamma {g_index}")
                t = Transition.from_fields(
                    _text(g["energy"]),
                    title,
                    _text(g.get("denergy")),
                    _text(g.get("intensity")),
                    _text(g.get("dintensity")),
                    nuclide=nucid,
                    expected_unobserved=bool(g.get("expected_unobserved", False)),
                    placement_uncertain=bool(g.get("placement_uncertain", False)),
                    final_level_energy=_text(g.get("final_level")) or None,
                )
                scheme.add_transition(t, handle)
    if resolve:
        for d in scheme.datasets:
            scheme.resolve_final_levels(d.title)
    logger.info(f"Loaded {scheme!r}")
    return scheme


def load_scheme(path: Union[str, Path], resolve: bool = True) -> LevelScheme:
    return scheme_from_dict(json.loads(Path(path).read_text()), resolve)


def _transition_dict(scheme: LevelScheme, t: Transition) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "energy": t.energy_text if t.energy_text else format_numeric(t.energy),
        "denergy": t.energy_uncertainty_text or format_numeric(t.energy_uncertainty),
        "intensity": format_numeric(t.intensity),
        "dintensity": t.intensity_uncertainty_text or format_numeric(t.intensity_uncertainty),
        "final_level": "" if t.final is None else scheme.levels[t.final].energy.text,
        "expected_unobserved": t.expected_unobserved,
        "placement_uncertain": t.placement_uncertain,
    }
    if t.energy_method or t.intensity_method:
        record["energy_method"] = t.energy_method
        record["energy_chi2"] = t.energy_chi2
        record["intensity_method"] = t.intensity_method
        record["intensity_chi2"] = t.intensity_chi2
    return record


def scheme_to_dict(scheme: LevelScheme) -> Dict[str, Any]:
    """Inverse of :func:`scheme_from_dict` (fit annotations included when set)."""
    datasets = []
    for d in scheme.datasets:
        levels = []
        for lvl in scheme.dataset_levels(d.title):
            record: Dict[str, Any] = {
                "energy": lvl.energy.text or str(lvl.energy),
                "denergy": format_numeric(lvl.energy_uncertainty),
                "jpi": lvl.spin_parity,
                "tag": lvl.tag,
                "gammas": [_transition_dict(scheme, t) for t in scheme.outgoing(lvl.handle)],
            }
            if lvl.beta is not None:
                record["beta"] = dict(zip(lvl.intensity_sources or [], lvl.beta))
            levels.append(record)
        datasets.append({"title": d.title, "reference": d.reference, "nucid": d.nucid, "levels": levels})
    return {
        "schema_name": SCHEME_SCHEMA["schema_name"],
        "schema_version": SCHEMA_VERSION,
        "nucid": scheme.nucid,
        "datasets": datasets,
    }


def save_scheme(scheme: LevelScheme, path: Union[str, Path], indent: Optional[int] = 2) -> None:
    Path(path).write_text(json.dumps(scheme_to_dict(scheme), indent=indent))
