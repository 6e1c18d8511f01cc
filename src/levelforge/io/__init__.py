"""Record input/output."""

from levelforge.io.records import load_scheme, save_scheme, scheme_from_dict, scheme_to_dict

__all__ = ["load_scheme", "save_scheme", "scheme_from_dict", "scheme_to_dict"]
