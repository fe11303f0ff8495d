import logging
import subprocess

from shared.errors import AdbError


logger = logging.getLogger("droidlink.adb")


def adb_text_escape(text):
    escaped = []
    for ch in text:
        if ch == " ":
            escaped.append("%s")
        elif ch in "\\'\"&|<>;()$`*~?#":
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _combined_output(result):
    parts = []
    for stream in (result.stdout, result.stderr):
        if not stream:
            continue
        if isinstance(stream, bytes):
            stream = stream.decode("utf-8", errors="replace")
        parts.append(stream.strip())
    return "\n".join(part for part in parts if part)


class AdbClient:
    def __init__(self, adb_path="adb", device_id=None, timeout=10.0):
        self.adb_path = adb_path
        self.device_id = device_id or None
        self.timeout = timeout

    def base_cmd(self):
        cmd = [self.adb_path]
        if self.device_id:
            cmd += ["-s", self.device_id]
        return cmd

    def run(self, args, timeout=None, check=True, text=True):
        cmd = self.base_cmd() + list(args)
        timeout = self.timeout if timeout is None else timeout
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                timeout=timeout,
                text=text,
            )
        except FileNotFoundError as exc:
            raise AdbError("adb not found: {}".format(self.adb_path)) from exc
        except subprocess.TimeoutExpired as exc:
            raise AdbError(
                "adb timed out after {}s: {}".format(timeout, " ".join(cmd))
            ) from exc
        if check and result.returncode != 0:
            output = _combined_output(result)
            raise AdbError(
                "adb failed ({}): {}".format(result.returncode, " ".join(cmd)),
                returncode=result.returncode,
                output=output,
            )
        return result

    def shell(self, cmd, timeout=None, check=True):
        if isinstance(cmd, str):
            args = ["shell", cmd]
        else:
            args = ["shell"] + list(cmd)
        return self.run(args, timeout=timeout, check=check)

    def exec_out_cmd(self, args):
        return self.base_cmd() + ["exec-out"] + list(args)

    def screen_size_output(self, timeout=None):
        return self.shell(["wm", "size"], timeout=timeout).stdout or ""

    def tap(self, x, y):
        return self.shell(["input", "tap", str(x), str(y)])

    def swipe(self, x1, y1, x2, y2, duration_ms=300):
        return self.shell(
            [
                "input",
                "swipe",
                str(x1),
                str(y1),
                str(x2),
                str(y2),
                str(duration_ms),
            ]
        )

    def keyevent(self, keycode):
        return self.shell(["input", "keyevent", str(keycode)])

    def input_text(self, text):
        return self.shell(["input", "text", adb_text_escape(str(text))])
