"""
Static Policy Table

The fixed, code-level role to permission mapping. Pure functions, no I/O.
Unknown roles map to the empty permission set, so every check against them denies.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Set, Union


class StaticRole(Enum):
    """Built-in roles"""
    ADMIN_USUARIOS = "adminusuarios"
    PROFESOR = "profesor"
    PADRE_FAMILIA = "padrefamilia"
    ADMIN_ESTUDIANTES = "adminestudiantes"
    ADMIN_PROFESORES = "adminprofesores"


class Permission(Enum):
    """Built-in permissions"""
    # User management
    CREATE_USER = "create_user"
    READ_USER = "read_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"
    ACTIVATE_USER = "activate_user"

    # Student management
    CREATE_STUDENT = "create_student"
    READ_STUDENT = "read_student"
    UPDATE_STUDENT = "update_student"
    DELETE_STUDENT = "delete_student"

    # Teacher management
    CREATE_TEACHER = "create_teacher"
    READ_TEACHER = "read_teacher"
    UPDATE_TEACHER = "update_teacher"
    DELETE_TEACHER = "delete_teacher"

    # Incidents
    CREATE_INCIDENT = "create_incident"
    READ_INCIDENT = "read_incident"
    UPDATE_INCIDENT = "update_incident"
    DELETE_INCIDENT = "delete_incident"
    READ_OWN_CHILDREN_INCIDENTS = "read_own_children_incidents"


ROLE_PERMISSIONS: Dict[StaticRole, FrozenSet[Permission]] = {
    StaticRole.ADMIN_USUARIOS: frozenset({
        Permission.CREATE_USER, Permission.READ_USER, Permission.UPDATE_USER,
        Permission.DELETE_USER, Permission.ACTIVATE_USER,
    }),
    StaticRole.PROFESOR: frozenset({
        Permission.CREATE_INCIDENT, Permission.READ_INCIDENT,
        Permission.UPDATE_INCIDENT, Permission.READ_STUDENT,
    }),
    StaticRole.PADRE_FAMILIA: frozenset({
        Permission.READ_OWN_CHILDREN_INCIDENTS, Permission.READ_STUDENT,
    }),
    StaticRole.ADMIN_ESTUDIANTES: frozenset({
        Permission.CREATE_STUDENT, Permission.READ_STUDENT,
        Permission.UPDATE_STUDENT, Permission.DELETE_STUDENT,
    }),
    StaticRole.ADMIN_PROFESORES: frozenset({
        Permission.CREATE_TEACHER, Permission.READ_TEACHER,
        Permission.UPDATE_TEACHER, Permission.DELETE_TEACHER,
    }),
}

# Display metadata used when seeding the dynamic store
ROLE_DISPLAY: Dict[StaticRole, Dict[str, str]] = {
    StaticRole.ADMIN_USUARIOS: {"name": "Administrador de Usuarios",
                                "description": "Manages user accounts",
                                "color": "#DC2626"},
    StaticRole.PROFESOR: {"name": "Profesor",
                          "description": "Records and follows up incidents",
                          "color": "#2563EB"},
    StaticRole.PADRE_FAMILIA: {"name": "Padre de Familia",
                               "description": "Reads incidents of their own children",
                               "color": "#16A34A"},
    StaticRole.ADMIN_ESTUDIANTES: {"name": "Administrador de Estudiantes",
                                   "description": "Manages student records",
                                   "color": "#9333EA"},
    StaticRole.ADMIN_PROFESORES: {"name": "Administrador de Profesores",
                                  "description": "Manages teacher records",
                                  "color": "#EA580C"},
}

_CATEGORY_BY_SUFFIX = (
    ("_user", "users"),
    ("_student", "students"),
    ("_teacher", "teachers"),
    ("_incident", "incidents"),
    ("_incidents", "incidents"),
)

RoleLike = Union[StaticRole, str, None]
PermissionLike = Union[Permission, str]


def _as_role(role: RoleLike) -> Optional[StaticRole]:
    if isinstance(role, StaticRole):
        return role
    try:
        return StaticRole(role)
    except ValueError:
        return None


def _permission_value(permission: PermissionLike) -> str:
    return permission.value if isinstance(permission, Permission) else permission


def is_static_role(role: RoleLike) -> bool:
    return _as_role(role) is not None


def permissions_of(role: RoleLike) -> Set[Permission]:
    """Permission set of a static role; empty for anything else"""
    static_role = _as_role(role)
    if static_role is None:
        return set()
    return set(ROLE_PERMISSIONS[static_role])


def has_permission(role: RoleLike, permission: PermissionLike) -> bool:
    value = _permission_value(permission)
    return any(p.value == value for p in permissions_of(role))


def has_permission_any_role(roles: Iterable[RoleLike], permission: PermissionLike) -> bool:
    return any(has_permission(role, permission) for role in roles)


def permission_category(permission: PermissionLike) -> str:
    """Catalogue category a built-in permission is seeded under"""
    value = _permission_value(permission)
    for suffix, category in _CATEGORY_BY_SUFFIX:
        if value.endswith(suffix):
            return category
    return "general"
