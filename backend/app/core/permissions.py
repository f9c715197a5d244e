import enum


class OperatorRole(str, enum.Enum):
    SUPER_ADMIN = 'SUPER_ADMIN'
    ADMIN = 'ADMIN'
    MODERATOR = 'MODERATOR'


class Permission(str, enum.Enum):
    SUPPORT_VIEW = 'support:view'
    SUPPORT_REPLY = 'support:reply'
    SUPPORT_MANAGE = 'support:manage'
    SUPPORT_CODES = 'support:codes'


ALL_PERMISSIONS = frozenset(p.value for p in Permission)
