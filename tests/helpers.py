from __future__ import annotations

import stat
import sys
from pathlib import Path

# Stands in for `vendor/bin/phpstan`. Behaviour is driven by environment
# variables so one script covers every scenario:
#   FAKE_PHPSTAN_MESSAGES  JSON list of PHPStan messages for the analysed file
#   FAKE_PHPSTAN_OTHER     JSON object of further {path: messages} in the report
#   FAKE_PHPSTAN_STDOUT    raw stdout instead of a JSON report
#   FAKE_PHPSTAN_PRO       "ok" | "no-tmp" | "exit" | "login"
FAKE_PHPSTAN = """\
import json
import os
import sys
import time

args = sys.argv[1:]

if "--watch" in args:
    mode = os.environ.get("FAKE_PHPSTAN_PRO", "ok")
    if mode == "exit":
        sys.stderr.write("license check failed")
        sys.exit(3)
    for done in (10, 25, 50):
        sys.stdout.write(" %d/50 [====>    ] %d%%\\r" % (done, done * 2))
        sys.stdout.flush()
        time.sleep(0.02)
    if mode != "no-tmp":
        config_dir = os.path.join(os.environ["TMPDIR"], "phpstan-fixer")
        os.makedirs(config_dir, exist_ok=True)
        with open(os.path.join(config_dir, "port.json"), "w") as fh:
            json.dump({"port": 11111}, fh)
        if mode == "login":
            with open(os.path.join(config_dir, "login_payload.jwt"), "w") as fh:
                fh.write("token")
    sys.stdout.write("\\n Open your web browser at: http://127.0.0.1:11111\\n")
    sys.stdout.flush()
    deadline = time.time() + 30
    while time.time() < deadline:
        time.sleep(0.1)
    sys.exit(0)

raw = os.environ.get("FAKE_PHPSTAN_STDOUT")
if raw is not None:
    sys.stdout.write(raw)
    sys.stderr.write("PHP Fatal error: boom")
    sys.exit(255)

target = args[-1]
messages = json.loads(os.environ.get("FAKE_PHPSTAN_MESSAGES", "[]"))
files = {target: {"errors": len(messages), "messages": messages}} if messages else {}
for other, other_messages in json.loads(os.environ.get("FAKE_PHPSTAN_OTHER", "{}")).items():
    files[other] = {"errors": len(other_messages), "messages": other_messages}
report = {"totals": {"errors": 0, "file_errors": len(messages)}, "files": files, "errors": []}
sys.stdout.write(json.dumps(report))
sys.exit(1 if files else 0)
"""


def install_fake_phpstan(project: Path) -> Path:
    binary = project / "vendor" / "bin" / "phpstan"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text(f"#!{sys.executable}\n{FAKE_PHPSTAN}", encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


def write_file(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
