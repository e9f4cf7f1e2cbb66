#!/usr/bin/env python3

import argparse
import json
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field

import requests


DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_SYSTEM_PROMPT = (
    "Assume you are a Linux/Unix-like systems expert. "
    "You are a helpful assistant that writes Linux commands to help the user accomplish their tasks. "
    "The response must contain a command inside a code-block that can be executed first and foremost, "
    "followed by an explanation of the command detailing what each parameter or flag or chaining does. "
    "Be concise in your response."
)
EXAMPLE_USER_PROMPT = "pretty print commits in this repository with author name"
EXAMPLE_ASSISTANT_RESPONSE = (
    "You can pretty print git commits with author name by using the following command:\n"
    "\n"
    "```bash\n"
    'git log --pretty=format:"%h %s (%an)" --graph\n'
    "```\n"
    "\n"
    "Explanation:\n"
    "- `git` is the content tracker that you asked to use.\n"
    "  - `log` lists commits reachable from the current commit, newest first.\n"
    '  - `--pretty=format:"%h %s (%an)"` is the format of the output.\n'
    "    - `%h` is the abbreviated hash of the commit.\n"
    "    - `%s` is the commit message.\n"
    "    - `%an` is the author name.\n"
    "  - `--graph` draws a text-based graph of the commit history next to the output.\n"
)
ROLES = ("system", "user", "assistant")
DONE_SENTINEL = "[DONE]"
CODE_BLOCK_PATTERN = re.compile(r"```(?:\w+)?\n?(?P<code>[\s\S]*?)\n?```")

AWAITING_ROLE = "awaiting-role"
STREAMING = "streaming"
DONE = "done"


class AIShellError(Exception):
    pass


class NetworkError(AIShellError):
    pass


class TransportError(AIShellError):
    def __init__(self, status_code, body=""):
        self.status_code = status_code
        self.body = body
        message = f"Response code is not 200 OK: {status_code}"
        if body:
            message = f"{message}: {body.strip()[:200]}"
        super().__init__(message)


class ParseError(AIShellError):
    pass


class ProtocolError(AIShellError):
    pass


class NoCommandFound(AIShellError):
    pass


class ExecutionError(AIShellError):
    def __init__(self, command, returncode, stderr=""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command failed with exit code {returncode}: {command}\nError message: {stderr.strip()}"
        )


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def to_dict(self):
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class RequestEnvelope:
    model: str
    messages: tuple
    stream: bool = False
    temperature: float | None = None
    max_tokens: int | None = None

    def __post_init__(self):
        # frozen, so bypass __setattr__ to normalize lists into tuples
        object.__setattr__(self, "messages", tuple(self.messages))
        if not self.messages or self.messages[0].role != "system":
            raise ValueError("A request must start with a system message.")
        if any(message.role == "system" for message in self.messages[1:]):
            raise ValueError("A request must contain exactly one system message.")

    def to_payload(self):
        payload = {
            "model": self.model,
            "messages": [message.to_dict() for message in self.messages],
            "stream": self.stream,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        return payload


@dataclass(frozen=True)
class RoleAnnouncement:
    role: str


@dataclass(frozen=True)
class ContentFragment:
    text: str


@dataclass(frozen=True)
class Terminal:
    pass


@dataclass(frozen=True)
class CommentFrame:
    text: str


@dataclass(frozen=True)
class DataFrame:
    data: str


@dataclass(frozen=True)
class StreamOutcome:
    fragments: tuple = field(default_factory=tuple)
    error: Exception | None = None

    @property
    def ok(self):
        return self.error is None

    @property
    def text(self):
        return "".join(self.fragments)


def env_float(name):
    value = os.getenv(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def env_int(name):
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def env_flag(name):
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes"}


def build_messages(task, system_prompt=None):
    return (
        Message("system", system_prompt or DEFAULT_SYSTEM_PROMPT),
        Message("user", EXAMPLE_USER_PROMPT),
        Message("assistant", EXAMPLE_ASSISTANT_RESPONSE),
        Message("user", task),
    )


def normalize_base_url(base_url):
    return base_url.rstrip("/")


def completions_endpoint(base_url):
    return f"{normalize_base_url(base_url)}/chat/completions"


def build_headers(api_key, stream=False):
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


def post_envelope(envelope, base_url, api_key, timeout=None):
    try:
        return requests.post(
            completions_endpoint(base_url),
            headers=build_headers(api_key, stream=envelope.stream),
            json=envelope.to_payload(),
            timeout=timeout,
            stream=envelope.stream,
        )
    except requests.RequestException as exc:
        raise NetworkError(f"Error sending request: {exc}") from exc


def first_choice(body):
    choices = body.get("choices") if isinstance(body, dict) else None
    if not isinstance(choices, list):
        raise ProtocolError(f"No choices in response body: {body!r}")
    if not choices:
        raise ProtocolError("Expected one choice, got none.")
    choice = choices[0]
    if not isinstance(choice, dict):
        raise ProtocolError(f"Unexpected choice: {choice!r}")
    return choice


def send_once(envelope, base_url, api_key, timeout=None):
    """Send a non-streaming request and return the assistant's answer text."""
    if envelope.stream:
        raise ValueError("send_once needs an envelope with streaming disabled.")
    response = post_envelope(envelope, base_url, api_key, timeout)
    if response.status_code != 200:
        raise TransportError(response.status_code, response.text)
    try:
        body = response.json()
    except ValueError as exc:
        raise ParseError(f"Error parsing response: {exc}") from exc

    message = first_choice(body).get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise ProtocolError(f"Unexpected response content: {message!r}")
    return content


def send_streaming(envelope, base_url, api_key, timeout=None):
    """Open a streaming request and return an EventSource over its frames."""
    if not envelope.stream:
        raise ValueError("send_streaming needs an envelope with streaming enabled.")
    response = post_envelope(envelope, base_url, api_key, timeout)
    if response.status_code != 200:
        try:
            body = response.text
        except requests.RequestException:
            body = ""
        finally:
            response.close()
        raise TransportError(response.status_code, body)
    return EventSource(response)


def parse_sse_lines(lines):
    """Group raw SSE lines into comment and data frames.

    Consecutive ``data:`` lines are joined with newlines and emitted at the
    next blank line. A pending event is flushed at the end of the body.
    """
    data_lines = []
    for line in lines:
        if line == "":
            if data_lines:
                yield DataFrame("\n".join(data_lines))
            data_lines = []
            continue
        if line.startswith(":"):
            yield CommentFrame(line[1:].lstrip())
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
    if data_lines:
        yield DataFrame("\n".join(data_lines))


class EventSource:
    """Pull-based view of a streaming response as SSE frames.

    Iteration ends normally at end of body; a dropped connection raises
    NetworkError. ``close()`` releases the connection and may be called at
    any point, any number of times.
    """

    def __init__(self, response):
        self.response = response
        self.closed = False
        self._frames = None

    def __iter__(self):
        return self

    def __next__(self):
        if self.closed:
            raise StopIteration
        if self._frames is None:
            self._frames = parse_sse_lines(self._iter_lines())
        return next(self._frames)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _iter_lines(self):
        # split as bytes: str.splitlines would also break on U+2028 and friends
        try:
            for line in self.response.iter_lines():
                yield line.decode("utf-8", errors="replace").rstrip("\r")
        except requests.RequestException as exc:
            raise NetworkError(f"Error receiving stream: {exc}") from exc

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self._frames is not None:
            self._frames.close()
        self.response.close()


def classify_delta(delta):
    if not isinstance(delta, dict):
        raise ProtocolError(f"Unexpected delta: {delta!r}")
    fields = {key: value for key, value in delta.items() if value is not None}
    if "role" in fields and fields.get("content") == "":
        del fields["content"]

    if not fields:
        return Terminal()
    if set(fields) == {"role"} and isinstance(fields["role"], str):
        return RoleAnnouncement(fields["role"])
    if set(fields) == {"content"} and isinstance(fields["content"], str):
        return ContentFragment(fields["content"])
    raise ProtocolError(f"Unexpected content: {delta!r}")


def decode_event(data):
    if data.strip() == DONE_SENTINEL:
        return Terminal()
    try:
        chunk = json.loads(data)
    except ValueError as exc:
        raise ParseError(f"Error parsing streaming response: {exc}") from exc
    if not isinstance(chunk, dict):
        raise ParseError(f"Error parsing streaming response: expected an object, got {data!r}")
    return classify_delta(first_choice(chunk).get("delta"))


class StreamReducer:
    """Skip/stop policy over one stream of deltas.

    ``feed`` returns the text to emit for a delta, or None.
    """

    def __init__(self):
        self.state = AWAITING_ROLE
        self.error = None

    @property
    def done(self):
        return self.state == DONE

    @property
    def succeeded(self):
        return self.done and self.error is None

    def feed(self, delta):
        if self.state == DONE:
            return None
        if isinstance(delta, RoleAnnouncement):
            if self.state == AWAITING_ROLE:
                self.state = STREAMING
            return None
        if isinstance(delta, ContentFragment):
            if self.state == STREAMING:
                return delta.text or None
            return None
        if isinstance(delta, Terminal):
            if self.state == STREAMING:
                self.state = DONE
            return None
        error = ProtocolError(f"Unexpected delta: {delta!r}")
        self.fail(error)
        raise error

    def fail(self, error):
        self.state = DONE
        self.error = error


def stream_fragments(source):
    """Yield the assistant's answer fragments from an event source.

    Fragments are yielded as they arrive; any error is raised after them.
    The source is closed however the generator ends.
    """
    reducer = StreamReducer()
    try:
        for frame in source:
            if isinstance(frame, CommentFrame):
                continue
            try:
                text = reducer.feed(decode_event(frame.data))
            except (ParseError, ProtocolError) as exc:
                reducer.fail(exc)
                raise
            if text:
                yield text
            if reducer.done:
                return
        error = NetworkError("Stream closed before the end of the message.")
        reducer.fail(error)
        raise error
    except NetworkError as exc:
        if not reducer.done:
            reducer.fail(exc)
        raise
    finally:
        source.close()


def request_fragments(envelope, base_url, api_key, timeout=None):
    return stream_fragments(send_streaming(envelope, base_url, api_key, timeout))


def collect_response(fragments, echo=False):
    collected = []
    error = None
    try:
        for fragment in fragments:
            collected.append(fragment)
            if echo:
                print(fragment, end="", flush=True)
    except AIShellError as exc:
        error = exc
    if echo:
        print()
    return StreamOutcome(tuple(collected), error)


def extract_code_block(text):
    match = CODE_BLOCK_PATTERN.search(text)
    if not match:
        raise NoCommandFound("No code block found in the response.")
    return match.group("code")


def should_execute(ask):
    if not ask:
        return True
    try:
        confirmation = input("\nExecute this command? [y/N]\n> ").strip().lower()
    except EOFError:
        return False
    return confirmation in {"y", "yes"}


def execute_command(command):
    completed = subprocess.run(["sh", "-c", command], capture_output=True, text=True, check=False)
    if completed.returncode != 0:
        raise ExecutionError(command, completed.returncode, completed.stderr)
    return completed


def debug(args, message):
    if args.verbose:
        print(f"[aicmd] {message}", file=sys.stderr)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Describe a task in plain words and get a shell command for it."
    )
    parser.add_argument("prompt", nargs="*", help="Description of the command you want.")
    parser.add_argument(
        "-m",
        "--model",
        default=os.getenv("AI_MODEL", DEFAULT_MODEL),
        help=f"Model name (default: {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--base-url",
        default=os.getenv("AI_BASE_URL", DEFAULT_BASE_URL),
        help=f"API base URL (default: {DEFAULT_BASE_URL})",
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("OPENAI_API_KEY"),
        help="API key. Defaults to OPENAI_API_KEY.",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        default=env_flag("AI_NO_STREAM"),
        help="Wait for the whole answer instead of streaming it.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Do not print the explanation, only the command output.",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Execute the command without asking for confirmation.",
    )
    parser.add_argument(
        "--system-prompt",
        default=os.getenv("AI_SYSTEM_PROMPT", ""),
        help="Override system prompt.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=env_float("AI_TEMPERATURE"),
        help="Sampling temperature.",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=env_int("AI_MAX_TOKENS"),
        help="Maximum output tokens.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=env_float("AI_TIMEOUT"),
        help="Request timeout in seconds (default: no timeout).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=env_flag("AI_VERBOSE"),
        help="Print request diagnostics to stderr.",
    )
    return parser.parse_args(argv)


def prompt_from_args(args):
    arg_prompt = " ".join(args.prompt).strip()
    stdin_prompt = ""
    if not sys.stdin.isatty():
        stdin_prompt = sys.stdin.read().strip()

    if arg_prompt and stdin_prompt:
        return f"{arg_prompt}\n\n{stdin_prompt}".strip()
    return arg_prompt or stdin_prompt


def make_envelope(args, prompt, stream):
    return RequestEnvelope(
        model=args.model,
        messages=build_messages(prompt, args.system_prompt),
        stream=stream,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
    )


def fetch_answer(args, prompt):
    explain = not args.quiet
    stream = not args.no_stream
    envelope = make_envelope(args, prompt, stream)
    debug(args, f"POST {completions_endpoint(args.base_url)} model={args.model} stream={stream}")

    if not stream:
        answer = send_once(envelope, args.base_url, args.api_key, args.timeout)
        if explain:
            print(answer)
        return answer

    fragments = request_fragments(envelope, args.base_url, args.api_key, args.timeout)
    try:
        outcome = collect_response(fragments, echo=explain)
    finally:
        fragments.close()
    debug(args, f"received {len(outcome.fragments)} fragments")
    if not outcome.ok:
        raise outcome.error
    return outcome.text


def run_one_shot(args, prompt):
    answer = fetch_answer(args, prompt)
    command = extract_code_block(answer)
    ask = not args.yes
    if not args.quiet or ask:
        print(f"\nCommand to execute: {command}")

    if not should_execute(ask):
        print("Skipped.")
        return

    completed = execute_command(command)
    debug(args, f"command exited with code {completed.returncode}")
    if not args.quiet:
        print("\nOutput:")
    print(completed.stdout, end="")
    if completed.stderr:
        print(completed.stderr, end="", file=sys.stderr)


def error_label(exc):
    if isinstance(exc, (NetworkError, TransportError)):
        return "Request error"
    if isinstance(exc, ExecutionError):
        return "Command error"
    return "Response error"


def main(argv=None):
    args = parse_args(argv)
    prompt = prompt_from_args(args)

    if args.max_tokens is not None and args.max_tokens <= 0:
        print("--max-tokens must be > 0.", file=sys.stderr)
        sys.exit(2)
    if args.timeout is not None and args.timeout <= 0:
        print("--timeout must be > 0.", file=sys.stderr)
        sys.exit(2)
    if not args.api_key:
        print("Missing API key. Set OPENAI_API_KEY or pass --api-key.", file=sys.stderr)
        sys.exit(2)
    if not prompt:
        print("Describe the command you want, e.g. `aicmd list files by size`.", file=sys.stderr)
        sys.exit(2)

    try:
        run_one_shot(args, prompt)
    except AIShellError as exc:
        print(f"{error_label(exc)}: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
