"""
Policy CLI commands: show
"""
import json
from dataclasses import asdict

from ceplatform.config.settings import EngineSettings


class PolicyCommand:
    """Retake policy CLI command handler."""

    def __init__(self, settings: EngineSettings, dry_run: bool = False):
        self.settings = settings
        self.dry_run = dry_run

    def execute(self, args) -> int:
        if args.policy_action == "show":
            return self._show(args)
        print("Error: Unknown policy action")
        return 1

    def _show(self, args) -> int:
        policy = self.settings.policy_for(args.jurisdiction)
        data = asdict(policy)
        data["exam_forms"] = list(policy.exam_forms)
        data["form_rotation"] = [policy.form_for_attempt(n) for n in range(1, policy.max_attempts + 1)]
        print(json.dumps(data, indent=2))
        return 0
