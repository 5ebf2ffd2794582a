from pathlib import Path

DEFAULT_COMMAND = ["npm", "run", "test:headless"]

DEFAULT_ENV = {
    "HEADLESS": "true",
    "TEST_SPEED": "FAST",
    "CI": "true",
    "FORCE_COLOR": "0",
}

DEFAULT_ENV_PASSTHROUGH = ["PATH", "HOME", "LANG", "TMPDIR"]

DEFAULT_PROGRESS_RULES_PATH = Path(__file__).resolve().parent / "progress_rules.json"
