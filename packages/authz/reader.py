"""Rule source reader.

Turns a YAML rule document into a RuleSet:

    privileges:
      - name: manage
        includes: [read, write]
      - name: manage
        context: projects
        includes: [archive]

    roles:
      - name: admin
        includes: [member]

    authorization:
      - role: member
        privileges: [read]
        contexts: [projects]
        attributes:
          - branch:
              company: [equals, {subject: company_id}]
          - owner: [equals, {subject: user_id}]

Privileges and roles may also be keyed by name:

    privileges:
      manage: {includes: [read, write]}
      archive_projects: {context: projects, includes: [read]}
    roles:
      admin: {includes: [member]}

Leaf values are literals, ``{subject: "dotted.path"}`` or
``{object: "dotted.path"}``.
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from packages.authz.errors import AuthorizationUsageError, RuleSourceError
from packages.authz.models import (
    Attribute,
    AuthorizationRule,
    RuleSet,
    constant,
    object_attr,
    subject_attr,
)

logger = logging.getLogger(__name__)


def load_rules(path: str | Path) -> RuleSet:
    """Read and parse a YAML rule file.

    Raises OSError if the file cannot be read, yaml.YAMLError if it is not
    YAML, and RuleSourceError if the document is not a valid rule set.
    """
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    rule_set = parse_rules(data or {})
    logger.info(
        "Loaded %d authorization rules for %d roles from %s",
        len(rule_set.auth_rules), len(rule_set.roles), path
    )
    return rule_set


def parse_rules(data: Mapping[str, Any]) -> RuleSet:
    """Build a RuleSet from an already parsed document."""
    if not isinstance(data, Mapping):
        raise RuleSourceError(f"Rule document must be a mapping, got {type(data).__name__}")

    rule_set = RuleSet()
    _read_privileges(data.get("privileges") or [], rule_set)
    _read_roles(data.get("roles") or [], rule_set)
    _read_authorization(data.get("authorization") or [], rule_set)
    return rule_set


def _labels(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise RuleSourceError(f"{what} must be a label or a list of labels, got {value!r}")


def _label(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise RuleSourceError(f"{what} must be a label, got {value!r}")
    return value


def _entries(section: Any, name: str) -> list[Mapping[str, Any]]:
    """Entries of a section, either as a list or keyed by name.

    ``{manage: {includes: [read]}}`` is read as
    ``[{name: manage, includes: [read]}]``.
    """
    if isinstance(section, Mapping):
        entries = []
        for key, value in section.items():
            if value is None:
                value = {}
            if not isinstance(value, Mapping):
                raise RuleSourceError(f"Entry {key!r} of section {name!r} must be a mapping")
            entries.append({**value, "name": key})
        return entries
    if not isinstance(section, list) or not all(isinstance(e, Mapping) for e in section):
        raise RuleSourceError(f"Section {name!r} must be a list or a mapping of entries")
    return section


def _read_privileges(section: Any, rule_set: RuleSet) -> None:
    for entry in _entries(section, "privileges"):
        if "name" not in entry:
            raise RuleSourceError(f"Privilege entry without name: {dict(entry)!r}")
        name = _label(entry["name"], "Privilege name")
        context = entry.get("context")
        if context is not None:
            context = _label(context, f"Context of privilege {name!r}")
        if name not in rule_set.privileges:
            rule_set.privileges.append(name)
        implied = rule_set.privilege_hierarchy.setdefault((name, context), [])
        for included in _labels(entry.get("includes"), f"includes of privilege {name!r}"):
            if (included, context) not in implied:
                implied.append((included, context))


def _add_role(rule_set: RuleSet, role: str) -> None:
    if role not in rule_set.roles:
        rule_set.roles.append(role)


def _read_roles(section: Any, rule_set: RuleSet) -> None:
    for entry in _entries(section, "roles"):
        if "name" not in entry:
            raise RuleSourceError(f"Role entry without name: {dict(entry)!r}")
        role = _label(entry["name"], "Role name")
        _add_role(rule_set, role)
        implied = rule_set.role_hierarchy.setdefault(role, [])
        for included in _labels(entry.get("includes"), f"includes of role {role!r}"):
            if included not in implied:
                implied.append(included)


def _read_authorization(section: Any, rule_set: RuleSet) -> None:
    # Attribute-free statements for the same role and contexts share one rule
    plain_rules: dict[tuple[str, frozenset[str]], AuthorizationRule] = {}

    if not isinstance(section, list):
        raise RuleSourceError("Section 'authorization' must be a list of entries")
    for entry in _entries(section, "authorization"):
        if "role" not in entry:
            raise RuleSourceError(f"Authorization entry without role: {dict(entry)!r}")
        role = _label(entry["role"], "Role of authorization entry")
        privileges = _labels(entry.get("privileges"), f"privileges of role {role!r}")
        contexts = _labels(entry.get("contexts"), f"contexts of role {role!r}")
        attributes = entry.get("attributes") or []
        if not isinstance(attributes, list):
            raise RuleSourceError(f"Attributes of role {role!r} must be a list")
        _add_role(rule_set, role)

        key = (role, frozenset(contexts))
        if not attributes and key in plain_rules:
            plain_rules[key].append_privileges(privileges)
            continue

        rule = AuthorizationRule(role, privileges, contexts)
        for conditions in attributes:
            try:
                rule.append_attribute(Attribute(_compile_tree(conditions)))
            except AuthorizationUsageError as e:
                raise RuleSourceError(f"Invalid attribute for role {role!r}: {e.message}") from e
        if not attributes:
            plain_rules[key] = rule
        rule_set.auth_rules.append(rule)


def _compile_tree(tree: Any) -> dict[str, Any]:
    if not isinstance(tree, Mapping):
        raise RuleSourceError(f"Attribute conditions must be a mapping, got {tree!r}")
    compiled: dict[str, Any] = {}
    for attr, value in tree.items():
        if isinstance(value, Mapping):
            compiled[attr] = _compile_tree(value)
        elif isinstance(value, list) and len(value) == 2:
            compiled[attr] = (value[0], _compile_expression(value[1]))
        else:
            raise RuleSourceError(f"Wrong conditions format for {attr!r}: {value!r}")
    return compiled


def _compile_expression(value: Any):
    if isinstance(value, Mapping):
        if set(value) == {"subject"}:
            return subject_attr(_label(value["subject"], "Subject path"))
        if set(value) == {"object"}:
            return object_attr(_label(value["object"], "Object path"))
        raise RuleSourceError(f"Unknown value expression {dict(value)!r}")
    return constant(value)
