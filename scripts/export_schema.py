"""Write the full TimeWalk schema as a SQL migration.

For the hosted platform, where the schema is applied as a migration rather
than by init_db() on application start.

Usage:
    uv run python scripts/export_schema.py > migrations/init.sql
    uv run python scripts/export_schema.py --no-rls --output schema.sql   # plain PostGIS
"""

import argparse
from pathlib import Path

from timewalk.ddl import render_schema


def main():
    parser = argparse.ArgumentParser(description="Render the TimeWalk schema as SQL")
    parser.add_argument(
        "--no-rls",
        action="store_true",
        help="Omit auth-dependent DDL (row-level security, auth.users foreign key)",
    )
    parser.add_argument("--output", type=Path, help="Write to this file instead of stdout")
    args = parser.parse_args()

    script = render_schema(enable_rls=not args.no_rls)
    if args.output:
        args.output.write_text(script)
        print(f"Wrote {args.output}")
    else:
        print(script, end="")


if __name__ == "__main__":
    main()
