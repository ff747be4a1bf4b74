# src/oshapp_bff/roles.py

import typing

ADMIN = "ADMIN"
RESP_RH = "RESP_RH"
INFIRMIER_ST = "INFIRMIER_ST"
MEDECIN_TRAVAIL = "MEDECIN_TRAVAIL"
RESP_HSE = "RESP_HSE"
SALARIE = "SALARIE"

FALLBACK_PATH = "/profile"

# Evaluated in order; first role the user holds wins.
ROLE_DASHBOARDS: typing.Tuple[typing.Tuple[str, str], ...] = (
    (ADMIN, "/dashboard-admin"),
    (RESP_RH, "/dashboard-rh"),
    (INFIRMIER_ST, "/dashboard-infirmier"),
    (MEDECIN_TRAVAIL, "/dashboard-medecin"),
    (RESP_HSE, "/dashboard-hse"),
    (SALARIE, "/dashboard-salarie"),
)

MEDICAL_STAFF_ROLES = frozenset({INFIRMIER_ST, MEDECIN_TRAVAIL})

# Paths on which an authenticated user is sent on to their dashboard.
AUTO_REDIRECT_PATHS = frozenset({"/", "/dashboard"})


def primary_role(roles: typing.Iterable[str]) -> typing.Optional[str]:
    held = set(roles or ())
    for role, _ in ROLE_DASHBOARDS:
        if role in held:
            return role
    return None


def dashboard_path_for(roles: typing.Iterable[str]) -> str:
    role = primary_role(roles)
    if role is None:
        return FALLBACK_PATH
    return dict(ROLE_DASHBOARDS)[role]


def is_medical_staff(roles: typing.Iterable[str]) -> bool:
    return bool(MEDICAL_STAFF_ROLES.intersection(roles or ()))
