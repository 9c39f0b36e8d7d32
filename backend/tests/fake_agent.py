"""Stand-in for an agent CLI, driven through the ``command`` provider.

Usage: ``python fake_agent.py <behaviour> <prompt>``
"""

import json
import sys
import time
from pathlib import Path

TARGET = Path("src/Button.tsx")


def emit(obj):
    print(json.dumps(obj), flush=True)


def edit_target():
    text = TARGET.read_text(encoding="utf-8")
    TARGET.write_text(text.replace("Get Started", "Start now"), encoding="utf-8")


def main(argv):
    behaviour, prompt = argv[1], argv[-1]
    emit({"type": "init", "content": "fake agent"})
    emit({"type": "message", "role": "assistant", "content": f"Working on: {prompt[:40]}"})

    if behaviour == "edit":
        emit({"type": "tool_use", "tool_name": "replace", "tool_id": "t1", "parameters": {"file_path": str(TARGET)}})
        edit_target()
        emit({"type": "tool_result", "tool_id": "t1", "status": "success"})
        emit({"type": "result", "status": "success", "content": "Renamed the button"})
        return 0
    if behaviour == "append":
        with TARGET.open("a", encoding="utf-8") as fh:
            fh.write("// touched\n")
        emit({"type": "result", "status": "success", "content": "Appended a line"})
        return 0
    if behaviour == "create":
        Path("src/NewCard.tsx").write_text("export const NewCard = () => null;\n", encoding="utf-8")
        emit({"type": "result", "status": "success", "content": "Added NewCard"})
        return 0
    if behaviour == "plain":
        print("just some text output", flush=True)
        return 0
    if behaviour == "fail":
        print("boom: something went wrong", file=sys.stderr, flush=True)
        return 3
    if behaviour == "sleep":
        time.sleep(60)
        return 0
    if behaviour == "edit_then_sleep":
        edit_target()
        time.sleep(60)
        return 0
    print(f"unknown behaviour {behaviour}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv))
