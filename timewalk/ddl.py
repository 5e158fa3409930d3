"""DDL that the ORM models do not express.

Base.metadata.create_all() creates enum types, tables, constraints, indexes
and comments. This module adds the rest, as idempotent statements:

- extensions (PostGIS and friends)
- the update_updated_at_column() trigger on every table with updated_at
- a <table>_current view per versioned table, filtered by temporal.valid_at()
- unless TIMEWALK_ENFORCE_NON_OVERLAP=false, an EXCLUDE constraint per
  versioned table so no logical key has two versions valid on one day
- on the hosted platform only (enable_rls=True): the profiles -> auth.users
  foreign key, the is_editor()/is_admin() helpers and row-level-security
  policies rendered from timewalk.policy's rule table

render_schema() produces the whole schema as one SQL script, for applying
as a migration on the hosted platform.
"""

import logging
from collections.abc import Iterable

from geoalchemy2 import Geometry
from sqlalchemy import Table, func
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable, SetColumnComment, SetTableComment

from . import policy
from .database import Base
from .models import VERSIONED_MODELS
from .schemas import UserRole
from .temporal import ENFORCE_NON_OVERLAP, valid_at

logger = logging.getLogger(__name__)

DIALECT = postgresql.dialect()

# btree_gist lets the non-overlap EXCLUDE constraints compare text keys
BASE_EXTENSIONS = ("postgis", "pgcrypto", "uuid-ossp", "pg_trgm", "btree_gist")
# Available on the hosted platform, not on a stock PostGIS image
HOSTED_EXTENSIONS = ("postgis_raster", "pg_stat_statements")

# SQL predicate satisfied by a caller holding at least the role
ROLE_PREDICATES: dict[UserRole, str] = {
    UserRole.VIEWER: "auth.uid() IS NOT NULL",
    UserRole.EDITOR: "is_editor()",
    UserRole.ADMIN: "is_admin()",
}

POLICY_COMMANDS: dict[policy.Operation, str] = {
    policy.Operation.READ: "SELECT",
    policy.Operation.INSERT: "INSERT",
    policy.Operation.UPDATE: "UPDATE",
    policy.Operation.DELETE: "DELETE",
}

POLICY_VERBS: dict[policy.Operation, str] = {
    policy.Operation.READ: "read",
    policy.Operation.INSERT: "write",
    policy.Operation.UPDATE: "update",
    policy.Operation.DELETE: "delete",
}


def compile_sql(clause) -> str:
    return str(clause.compile(dialect=DIALECT, compile_kwargs={"literal_binds": True}))


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def tables() -> list[Table]:
    return list(Base.metadata.sorted_tables)


def timestamped_tables() -> list[Table]:
    return [table for table in tables() if "updated_at" in table.c]


# =============================================================================
# EXTENSIONS
# =============================================================================


def extension_statements(enable_rls: bool = False) -> list[str]:
    names = BASE_EXTENSIONS + (HOSTED_EXTENSIONS if enable_rls else ())
    return [f'CREATE EXTENSION IF NOT EXISTS "{name}"' for name in names]


# =============================================================================
# TRIGGERS
# =============================================================================


UPDATED_AT_FUNCTION = """
CREATE OR REPLACE FUNCTION update_updated_at_column()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = NOW();
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
""".strip()


def trigger_statements() -> list[str]:
    statements = [UPDATED_AT_FUNCTION]
    for table in timestamped_tables():
        name = f"update_{table.name}_updated_at"
        statements.append(f"DROP TRIGGER IF EXISTS {name} ON {table.name}")
        statements.append(
            f"CREATE TRIGGER {name} BEFORE UPDATE ON {table.name} "
            f"FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()"
        )
    return statements


# =============================================================================
# CURRENT VIEWS
# =============================================================================


def current_view_name(model) -> str:
    return f"{model.__tablename__}_current"


def view_statements() -> list[str]:
    """One <table>_current view per versioned table, valid as of CURRENT_DATE."""
    statements = []
    for model in VERSIONED_MODELS:
        table = model.__tablename__
        view = current_view_name(model)
        predicate = compile_sql(valid_at(model, func.current_date()))
        statements.append(f"CREATE OR REPLACE VIEW {view} AS SELECT * FROM {table} WHERE {predicate}")
        statements.append(
            f"COMMENT ON VIEW {view} IS "
            f"{quote_literal(f'Currently valid {table} (valid_from <= today < valid_to)')}"
        )
    return statements


# =============================================================================
# NON-OVERLAP
# =============================================================================


def exclusion_name(model) -> str:
    return f"ex_{model.__tablename__}_no_overlap"


def exclusion_statement(model) -> str:
    """EXCLUDE constraint: no two versions of one logical key share a day.

    Rows with a null key are never compared. Backs the repository's own
    check, which cannot see versions another transaction is inserting.
    """
    name = exclusion_name(model)
    return f"""
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = '{name}') THEN
        ALTER TABLE {model.__tablename__}
            ADD CONSTRAINT {name} EXCLUDE USING gist (
                {model.__logical_key__} WITH =,
                daterange(valid_from, valid_to, '[)') WITH &&
            );
    END IF;
END
$$
""".strip()


def exclusion_statements() -> list[str]:
    return [exclusion_statement(model) for model in VERSIONED_MODELS]


# =============================================================================
# ROW-LEVEL SECURITY
# =============================================================================


PROFILES_AUTH_FK = """
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = 'profiles_id_fkey') THEN
        ALTER TABLE profiles
            ADD CONSTRAINT profiles_id_fkey FOREIGN KEY (id) REFERENCES auth.users(id) ON DELETE CASCADE;
    END IF;
END
$$
""".strip()


def role_function(name: str, minimum: UserRole) -> str:
    """is_<role>(): does the calling auth user hold at least `minimum`?"""
    allowed = [role for role, rank in policy.ROLE_RANK.items() if rank >= policy.ROLE_RANK[minimum]]
    values = ", ".join(quote_literal(role.value) for role in allowed)
    return (
        f"CREATE OR REPLACE FUNCTION {name}() RETURNS boolean\n"
        f"LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$\n"
        f"    SELECT EXISTS (SELECT 1 FROM profiles WHERE id = auth.uid() AND role IN ({values}))\n"
        f"$$"
    )


def policy_predicate(rule: policy.Rule, self_column: str = "id") -> str:
    if rule.minimum_role is None:
        return "true"
    terms = [ROLE_PREDICATES[rule.minimum_role]]
    if rule.allow_self:
        terms.insert(0, f"{self_column} = auth.uid()")
    return " OR ".join(terms)


def policy_name(table: str, operation: policy.Operation, rule: policy.Rule) -> str:
    if rule.minimum_role is None:
        audience = "public"
    elif rule.allow_self:
        audience = "self"
    else:
        audience = f"{rule.minimum_role.value}s"
    return f"{table} {audience} {POLICY_VERBS[operation]}"


def policy_statements(table: str) -> list[str]:
    """DROP/CREATE POLICY pairs for one table, from the shared rule table."""
    statements = []
    for operation, rule in policy.rules_for(policy.ResourceKind(table)).items():
        name = policy_name(table, operation, rule)
        predicate = policy_predicate(rule)
        clause = f"WITH CHECK ({predicate})" if operation is policy.Operation.INSERT else f"USING ({predicate})"
        statements.append(f'DROP POLICY IF EXISTS "{name}" ON {table}')
        statements.append(
            f'CREATE POLICY "{name}" ON {table} FOR {POLICY_COMMANDS[operation]} {clause}'
        )
    return statements


def rls_statements() -> list[str]:
    statements = [
        PROFILES_AUTH_FK,
        role_function("is_editor", UserRole.EDITOR),
        role_function("is_admin", UserRole.ADMIN),
    ]
    for table in tables():
        statements.append(f"ALTER TABLE {table.name} ENABLE ROW LEVEL SECURITY")
        statements.extend(policy_statements(table.name))
    return statements


def post_create_statements(
    enable_rls: bool = False,
    enforce_non_overlap: bool = ENFORCE_NON_OVERLAP,
) -> list[str]:
    """Everything that runs after create_all()."""
    statements = trigger_statements() + view_statements()
    if enforce_non_overlap:
        statements += exclusion_statements()
    if enable_rls:
        statements += rls_statements()
    return statements


# =============================================================================
# FULL SCRIPT
# =============================================================================


def enum_statements() -> list[str]:
    seen: dict[str, str] = {}
    for table in tables():
        for column in table.c:
            enum = column.type
            name = getattr(enum, "name", None)
            if name and getattr(enum, "enums", None) and name not in seen:
                values = ", ".join(quote_literal(v) for v in enum.enums)
                seen[name] = (
                    f"DO $$ BEGIN CREATE TYPE {name} AS ENUM ({values}); "
                    f"EXCEPTION WHEN duplicate_object THEN NULL; END $$"
                )
    return list(seen.values())


def table_statements(table: Table) -> list[str]:
    statements = [compile_sql(CreateTable(table, if_not_exists=True))]
    geometry_columns = {c.name for c in table.c if isinstance(c.type, Geometry)}

    for index in sorted(table.indexes, key=lambda i: i.name or ""):
        if {c.name for c in index.columns} & geometry_columns:
            continue
        statements.append(compile_sql(CreateIndex(index, if_not_exists=True)))
    for column in sorted(geometry_columns):
        statements.append(
            f"CREATE INDEX IF NOT EXISTS idx_{table.name}_{column} ON {table.name} USING GIST ({column})"
        )

    if table.comment:
        statements.append(compile_sql(SetTableComment(table)))
    for column in table.c:
        if column.comment:
            statements.append(compile_sql(SetColumnComment(column)))
    return statements


def render_schema(enable_rls: bool = True, enforce_non_overlap: bool = ENFORCE_NON_OVERLAP) -> str:
    """The complete schema as a single SQL script."""
    statements: list[str] = extension_statements(enable_rls) + enum_statements()
    for table in tables():
        statements.extend(table_statements(table))
    statements.extend(post_create_statements(enable_rls, enforce_non_overlap))
    logger.debug(f"Rendered {len(statements)} schema statements")
    return join_statements(statements)


def join_statements(statements: Iterable[str]) -> str:
    return "\n\n".join(statement.rstrip().rstrip(";") + ";" for statement in statements) + "\n"
