"""
Closed vocabularies shared by the catalog and the resolver.

Every enumerated string that appears in the access-control tables is
declared once here. The `Vocabulary` object narrows the enums for a
deployment and is handed to the Catalog Store and Resolver at
construction time.
"""

import enum
from dataclasses import dataclass
from typing import Iterable, Optional


class Action(str, enum.Enum):
    """Actions a permission can allow on a resource."""
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    EXECUTE = "execute"
    EXPORT = "export"
    IMPORT = "import"
    APPROVE = "approve"
    MANAGE = "manage"


class ModuleCategory(str, enum.Enum):
    """Module categorization."""
    CORE = "core"
    HR = "hr"
    FINANCE = "finance"
    INVENTORY = "inventory"
    CRM = "crm"
    PROJECT = "project"
    DOCUMENT = "document"
    REPORTING = "reporting"
    INTEGRATION = "integration"
    SECURITY = "security"
    SETTINGS = "settings"


class ResourceType(str, enum.Enum):
    """Kinds of protectable resources."""
    PAGE = "page"
    API = "api"
    FEATURE = "feature"
    REPORT = "report"
    ACTION = "action"
    WIDGET = "widget"


class Lifecycle(str, enum.Enum):
    """Soft-delete state of a catalog or role row."""
    ACTIVE = "active"
    DELETED = "deleted"


class RoleScope(str, enum.Enum):
    """Where a role is defined."""
    SYSTEM = "system"
    WORKSPACE = "workspace"
    COMPANY = "company"


class EnablementTarget(str, enum.Enum):
    """Entity kind an enablement row switches on or off."""
    MODULE = "module"
    RESOURCE = "resource"


class Outcome(str, enum.Enum):
    """Decision outcome."""
    ALLOW = "allow"
    DENY = "deny"


class ReasonCode(str, enum.Enum):
    """
    Reason attached to every decision.

    Downstream consumers match on these values, so members are only ever
    added (bumping REASON_CODES_VERSION), never renamed.
    """
    PUBLIC = "public"
    DISABLED = "disabled"
    UNDEFINED_PERMISSION = "undefined_permission"
    EXPLICIT_DENY = "explicit_deny"
    EXPLICIT_GRANT = "explicit_grant"
    NO_GRANT = "no_grant"
    INTERNAL_ERROR = "internal_error"


REASON_CODES_VERSION = 2


@dataclass(frozen=True)
class Vocabulary:
    """Allowed members of each vocabulary for one deployment."""

    actions: frozenset[Action] = frozenset(Action)
    categories: frozenset[ModuleCategory] = frozenset(ModuleCategory)
    resource_types: frozenset[ResourceType] = frozenset(ResourceType)

    def parse_action(self, value: "str | Action") -> Optional[Action]:
        """Return the Action for value, or None when it is outside the vocabulary."""
        try:
            action = Action(value)
        except ValueError:
            return None
        return action if action in self.actions else None

    def has_category(self, value: "str | ModuleCategory") -> bool:
        try:
            return ModuleCategory(value) in self.categories
        except ValueError:
            return False

    def has_resource_type(self, value: "str | ResourceType") -> bool:
        try:
            return ResourceType(value) in self.resource_types
        except ValueError:
            return False

    @classmethod
    def from_names(
        cls,
        actions: Iterable[str] = (),
        categories: Iterable[str] = (),
        resource_types: Iterable[str] = (),
    ) -> "Vocabulary":
        """
        Build a vocabulary from configured names.

        An empty iterable keeps the full enum. Unknown names raise ValueError.
        """
        actions = [a for a in actions if a]
        categories = [c for c in categories if c]
        resource_types = [t for t in resource_types if t]
        return cls(
            actions=frozenset(Action(a) for a in actions) if actions else frozenset(Action),
            categories=frozenset(ModuleCategory(c) for c in categories) if categories else frozenset(ModuleCategory),
            resource_types=frozenset(ResourceType(t) for t in resource_types) if resource_types else frozenset(ResourceType),
        )


DEFAULT_VOCABULARY = Vocabulary()
