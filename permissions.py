from errors import Forbidden, Unauthorized

ROLES = ('admin', 'teacher', 'student', 'visitor')
PRIVILEGED = ('admin', 'teacher')

# Roles a visitor may pick when signing up on their own
SELF_REGISTRATION_ROLES = ('student', 'visitor')

PERMISSIONS = {
    'books:list': ROLES,
    'books:view': ROLES,
    'books:create': PRIVILEGED,
    'books:update': PRIVILEGED,
    'books:delete': ('admin',),
    'users:list': ('admin',),
    'users:manage': ('admin',),
    'loans:list': ROLES,
    'loans:list_all': PRIVILEGED,
    'loans:view': ROLES,
    'loans:view_all': PRIVILEGED,
    'loans:create': ROLES,
    'loans:create_for_others': PRIVILEGED,
    'loans:update': PRIVILEGED,
    'loans:return': ROLES,
    'loans:return_any': PRIVILEGED,
    'dashboard:view': ROLES,
}

ALLOWED = frozenset(
    (action, role) for action, roles in PERMISSIONS.items() for role in roles
)


def is_allowed(action, role):
    return (action, role) in ALLOWED


def check_access(user, action=None):
    """Raise Unauthorized without a user, Forbidden when its role may not perform action."""
    if user is None:
        raise Unauthorized('Unauthorized access')
    if action is not None and not is_allowed(action, user.role):
        raise Forbidden(f'Role {user.role} may not perform {action}')
    return user


def can_act_on(user, owner_id, action, any_action):
    """Owners may use action on their own records; others need any_action."""
    check_access(user, action)
    if owner_id == user.id or is_allowed(any_action, user.role):
        return user
    raise Forbidden(f'Role {user.role} may not perform {any_action}')
