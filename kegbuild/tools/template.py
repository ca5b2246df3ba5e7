from typing import Mapping

import string


class Template(string.Template):
    delimiter = "@@"
    # @@{lib:openblas} refers to a per-dependency variable
    braceidpattern = r"(?a:[_a-z][_a-z0-9]*(?::[^}]+)?)"


def format_template(tpltext: str, variables: Mapping[str, str]) -> str:
    template = Template(tpltext)
    return template.substitute(variables)
