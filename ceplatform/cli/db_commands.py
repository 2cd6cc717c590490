"""
Database CLI commands: init, verify
"""
import asyncio
import json

from ceplatform.config.settings import EngineSettings
from ceplatform.database import Database
from ceplatform.errors import APIError
from ceplatform.services.integrity_service import verify_enrollment_integrity


class DbCommand:
    """Database CLI command handler."""

    def __init__(self, settings: EngineSettings, dry_run: bool = False):
        self.settings = settings
        self.dry_run = dry_run

    def execute(self, args) -> int:
        """Execute database command."""
        if args.db_action == "init":
            return self._init(args)
        elif args.db_action == "verify":
            return self._verify(args)
        else:
            print("Error: Unknown database action")
            return 1

    def _init(self, args) -> int:
        print("=== Database Init ===")
        if self.dry_run:
            print(f"[DRY RUN] Would create tables on {self.settings.database_url}")
            return 0
        asyncio.run(self._run_init())
        print("✓ Tables created/verified")
        return 0

    async def _run_init(self):
        database = Database(self.settings.database_url)
        try:
            await database.init_db()
        finally:
            await database.dispose()

    def _verify(self, args) -> int:
        print(f"=== Integrity Check: enrollment {args.enrollment_id} ===")
        try:
            report = asyncio.run(self._run_verify(args.enrollment_id))
        except APIError as e:
            print(f"Error: {e.message}")
            return 1

        print(json.dumps(report, indent=2, default=str))
        if report["ok"]:
            print("✓ No violations")
            return 0
        print(f"✗ {len(report['violations'])} violation(s)")
        return 2

    async def _run_verify(self, enrollment_id: int) -> dict:
        database = Database(self.settings.database_url)
        try:
            async with database.session() as session:
                return await verify_enrollment_integrity(session, self.settings, enrollment_id)
        finally:
            await database.dispose()
