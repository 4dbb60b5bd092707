"""
Permission conditions.

Conditions are stored as JSON blobs on permissions (the default template)
and on assignments (an override). They are decoded once, when a workspace
snapshot is loaded, into a tuple of immutable condition objects. Every
member of the tuple must hold for the condition set to be satisfied; the
empty tuple is unconditional.

Blob format:

    {
        "scope": "own" | "department" | "company" | "workspace",
        "fields": ["salary", "iban"],
        "departments": ["..."],
        "companies": ["..."],
        "customConditions": {"employment_type": "contractor"}
    }
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from tenantguard.authz.errors import ConfigurationError

if TYPE_CHECKING:
    from tenantguard.authz.domain import EvalContext, Principal, TenantContext


SCOPES = ("own", "department", "company", "workspace")


def freeze(value: Any) -> Any:
    """Hashable form of a JSON value: arrays become tuples, objects frozensets of items."""
    if isinstance(value, Mapping):
        return frozenset((key, freeze(item)) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of `freeze`."""
    if isinstance(value, frozenset):
        return {key: thaw(item) for key, item in sorted(value, key=lambda pair: pair[0])}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


def _same(left: Any, right: Any) -> bool:
    return left is not None and right is not None and str(left) == str(right)


@dataclass(frozen=True)
class Own:
    """The record must belong to the principal."""

    def evaluate(self, principal: "Principal", tenant: "TenantContext", ctx: "EvalContext") -> bool:
        return _same(ctx.owner_id, principal.user_id)


@dataclass(frozen=True)
class Department:
    """
    The record must belong to the principal's department, or to one of
    the listed departments when `ids` is set.
    """
    ids: Optional[frozenset[str]] = None

    def evaluate(self, principal: "Principal", tenant: "TenantContext", ctx: "EvalContext") -> bool:
        if ctx.department_id is None:
            return False
        if self.ids is not None:
            return str(ctx.department_id) in self.ids
        return _same(ctx.department_id, principal.department_id)


@dataclass(frozen=True)
class Company:
    """
    The record must belong to the tenant's company, or to one of the
    listed companies when `ids` is set. A record without company facts is
    attributed to the tenant's company.
    """
    ids: Optional[frozenset[str]] = None

    def evaluate(self, principal: "Principal", tenant: "TenantContext", ctx: "EvalContext") -> bool:
        record_company = ctx.company_id if ctx.company_id is not None else tenant.company_id
        if record_company is None:
            return False
        if self.ids is not None:
            return str(record_company) in self.ids
        return _same(record_company, tenant.company_id)


@dataclass(frozen=True)
class Workspace:
    """The record must live in the tenant's workspace."""

    def evaluate(self, principal: "Principal", tenant: "TenantContext", ctx: "EvalContext") -> bool:
        return ctx.workspace_id is None or _same(ctx.workspace_id, tenant.workspace_id)


@dataclass(frozen=True)
class Custom:
    """Only the listed fields may be touched."""
    fields: frozenset[str]

    def evaluate(self, principal: "Principal", tenant: "TenantContext", ctx: "EvalContext") -> bool:
        return ctx.fields <= self.fields


@dataclass(frozen=True)
class AttributeMatch:
    """
    Every required attribute must equal the record's attribute.

    Values are held in `freeze` form so the condition stays hashable.
    """
    required: tuple[tuple[str, Any], ...]

    def evaluate(self, principal: "Principal", tenant: "TenantContext", ctx: "EvalContext") -> bool:
        return all(
            key in ctx.attributes and freeze(ctx.attributes[key]) == value
            for key, value in self.required
        )


Condition = Union[Own, Department, Company, Workspace, Custom, AttributeMatch]
ConditionSet = tuple[Condition, ...]

UNCONDITIONAL: ConditionSet = ()


def _id_set(values: Any, key: str) -> Optional[frozenset[str]]:
    if values is None:
        return None
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"Condition '{key}' must be a list")
    return frozenset(str(v) for v in values)


def decode_conditions(blob: Optional[Mapping[str, Any]]) -> ConditionSet:
    """
    Decode a JSON condition blob.

    Args:
        blob: Stored conditions, or None

    Returns:
        Condition set (empty when blob is empty)

    Raises:
        ConfigurationError: Unknown scope or malformed member
    """
    if not blob:
        return UNCONDITIONAL
    if not isinstance(blob, Mapping):
        raise ConfigurationError("Conditions must be a JSON object")

    conditions: list[Condition] = []
    scope = blob.get("scope")
    departments = _id_set(blob.get("departments"), "departments")
    companies = _id_set(blob.get("companies"), "companies")

    if scope is not None and scope not in SCOPES:
        raise ConfigurationError(f"Unknown condition scope: {scope}")

    if scope == "own":
        conditions.append(Own())
    elif scope == "workspace":
        conditions.append(Workspace())

    if scope == "department" or departments is not None:
        conditions.append(Department(ids=departments))
    if scope == "company" or companies is not None:
        conditions.append(Company(ids=companies))

    fields = blob.get("fields")
    if fields is not None:
        conditions.append(Custom(fields=_id_set(fields, "fields")))

    custom = blob.get("customConditions", blob.get("custom_conditions"))
    if custom:
        if not isinstance(custom, Mapping):
            raise ConfigurationError("Condition 'customConditions' must be an object")
        conditions.append(AttributeMatch(
            required=tuple(sorted((key, freeze(value)) for key, value in custom.items()))
        ))

    return tuple(conditions)


def _claim_scope(blob: dict[str, Any], scope: str) -> None:
    current = blob.setdefault("scope", scope)
    if current != scope:
        raise ConfigurationError(f"Conditions combine scopes '{current}' and '{scope}'")


def encode_conditions(conditions: Optional[ConditionSet]) -> Optional[dict[str, Any]]:
    """
    Encode a condition set back into its JSON blob (None when unconditional).

    Decoding the result gives the same set. Variants that need the single
    `scope` key claim it first; an allow-list only takes it when it is free.

    Raises:
        ConfigurationError: Two variants need different scopes
    """
    if not conditions:
        return None

    blob: dict[str, Any] = {}
    for condition in conditions:
        if isinstance(condition, Own):
            _claim_scope(blob, "own")
        elif isinstance(condition, Workspace):
            _claim_scope(blob, "workspace")
        elif isinstance(condition, Department) and condition.ids is None:
            _claim_scope(blob, "department")
        elif isinstance(condition, Company) and condition.ids is None:
            _claim_scope(blob, "company")

    for condition in conditions:
        if isinstance(condition, Department) and condition.ids is not None:
            blob.setdefault("scope", "department")
            blob["departments"] = sorted(condition.ids)
        elif isinstance(condition, Company) and condition.ids is not None:
            blob.setdefault("scope", "company")
            blob["companies"] = sorted(condition.ids)
        elif isinstance(condition, Custom):
            blob["fields"] = sorted(condition.fields)
        elif isinstance(condition, AttributeMatch):
            blob["customConditions"] = {key: thaw(value) for key, value in condition.required}
    return blob


def conditions_satisfied(
    conditions: ConditionSet,
    principal: "Principal",
    tenant: "TenantContext",
    ctx: "EvalContext",
) -> bool:
    """Return True when every condition in the set holds."""
    return all(c.evaluate(principal, tenant, ctx) for c in conditions)
