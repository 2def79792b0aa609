import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

from importlib import metadata

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    config_path,
    generate_config,
    load_config,
)
from .models import FinalText, ModelConfig, ToolCalls, VENDORS, create_client
from .report import (
    AgentError,
    AuthError,
    ConfigError,
    InvalidInput,
    MalformedResponse,
    ModelError,
    NotFound,
    RateLimited,
    ReportCollector,
    RoundLimitExceeded,
    TransportError,
)
from .tools import LocalFilesystem, build_registry
from .transcript import ASSISTANT, Conversation, ToolCallResult, Turn

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MAX_ROUNDS = 50
DEFAULT_RETRIES = 2
DEFAULT_BACKOFF = 2.0
MAX_ARG_LOG = 1000

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def estimate_tokens(turns, tools: list | None = None) -> int:
    """Count tokens across all turns using tiktoken."""
    encoder = _get_encoder()
    total = 0
    for turn in turns:
        content = turn.text
        for call in turn.tool_calls:
            args = call.arguments
            content += call.tool_name + (
                args if isinstance(args, str) else json.dumps(args)
            )
        for result in turn.results:
            content += result.as_text()
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(turns)
    return total


def load_system_prompt(
    system_prompt: str | None = None, no_system_prompt: bool = False
) -> str | None:
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()


def build_conversation(
    *,
    provider: str = "claude",
    model: str | None = None,
    api_key: str | None = None,
    base_dir: str = ".",
    yolo: bool = False,
    max_output_tokens: int | None = None,
    temperature: float | None = None,
    timeout: float | None = None,
    system_prompt: str | None = None,
    no_system_prompt: bool = False,
) -> Conversation:
    """Resolve credentials once and wire a client, a registry and a system prompt together.

    Raises AuthError when the provider's key is missing, ConfigError for an
    unknown provider or a base directory that does not exist.
    """
    if not Path(base_dir).is_dir():
        raise ConfigError(f"base directory does not exist: {base_dir}")

    overrides = {}
    if max_output_tokens is not None:
        overrides["max_output_tokens"] = max_output_tokens
    if temperature is not None:
        overrides["temperature"] = temperature
    if timeout is not None:
        overrides["timeout"] = float(timeout)

    config = ModelConfig.from_env(provider, model=model, api_key=api_key, **overrides)
    client = create_client(provider, config)
    registry = build_registry(LocalFilesystem(base_dir, unrestricted=yolo))
    return Conversation(
        client,
        registry,
        system_prompt=load_system_prompt(system_prompt, no_system_prompt),
    )


def handle_tool_call(request, registry, verbose):
    """Execute a single tool call and return (result, metadata).

    result is the ToolCallResult for the transcript.
    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    name = request.tool_name

    if verbose:
        if isinstance(request.arguments, str):
            pretty = request.arguments
        else:
            pretty = json.dumps(request.arguments, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    try:
        result = registry.dispatch(name, request.arguments, call_id=request.call_id)
    except Exception as e:
        logger.debug("tool %s raised", name, exc_info=True)
        result = ToolCallResult.failure(request.call_id, type(e).__name__, str(e))
    elapsed = time.monotonic() - t0

    succeeded = not result.is_error
    if verbose:
        if not succeeded:
            fmt.tool_error(name, result.as_text())
        else:
            fmt.tool_result(name, elapsed, result.as_text()[:500])

    return (
        result,
        {
            "name": name,
            "arguments": request.arguments,
            "elapsed": elapsed,
            "succeeded": succeeded,
        },
    )


def _call_model(conversation, schemas, verbose):
    client = conversation.client
    if verbose:
        with fmt.llm_spinner():
            return client.complete(
                conversation.turns, schemas, system_prompt=conversation.system_prompt
            )
    return client.complete(
        conversation.turns, schemas, system_prompt=conversation.system_prompt
    )


def _run_rounds(
    conversation: Conversation,
    *,
    max_rounds: int,
    verbose: bool,
    report: ReportCollector | None,
) -> str:
    """Ask the model, run the tools it requests, repeat until it answers.

    The assistant turn and its tool_result turn are appended together once
    every call in the round has been dispatched, so a round that fails or is
    interrupted leaves no trace in the transcript.
    """
    if max_rounds < 1:
        raise InvalidInput("max_rounds must be at least 1")

    registry = conversation.registry
    schemas = registry.schemas()
    offset = report.max_round_seen if report else 0
    rounds = 0

    while rounds < max_rounds:
        rounds += 1
        round_no = rounds + offset
        if verbose:
            fmt.turn_header(rounds, max_rounds, estimate_tokens(conversation.turns, schemas))

        t0 = time.monotonic()
        try:
            response = _call_model(conversation, schemas, verbose)
        except ModelError as e:
            if report:
                report.record_llm_call(
                    round_no, time.monotonic() - t0, "error", error=str(e)
                )
            raise
        elapsed = time.monotonic() - t0

        if isinstance(response, ToolCalls) and not response.calls:
            response = FinalText("")
        if not isinstance(response, (FinalText, ToolCalls)):
            raise MalformedResponse(
                f"model client returned {type(response).__name__}, "
                "expected FinalText or ToolCalls"
            )

        outcome = "final" if isinstance(response, FinalText) else "tool_calls"
        if verbose:
            fmt.llm_timing(elapsed, outcome)
        if report:
            report.record_llm_call(round_no, elapsed, outcome)

        if isinstance(response, FinalText):
            conversation.append(Turn.assistant(response.text))
            if verbose:
                fmt.completion(rounds, "ok")
            return response.text

        results = []
        for request in response.calls:
            result, meta = handle_tool_call(request, registry, verbose)
            results.append(result)
            if report:
                report.record_tool_call(
                    round_no,
                    meta["name"],
                    meta["arguments"],
                    meta["succeeded"],
                    meta["elapsed"],
                    len(result.as_text()),
                    error=result.error,
                )

        conversation.append(Turn.assistant_calls(response.calls))
        conversation.append(Turn.tool_results(results))

    if verbose:
        fmt.completion(rounds, "exhausted")
    raise RoundLimitExceeded(rounds)


def run_turn(
    conversation: Conversation,
    user_text: str,
    *,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> str:
    """Add a user message and drive the tool loop to a final answer.

    Returns the assistant's final text. Raises InvalidInput for a blank
    message, RoundLimitExceeded when the model is still calling tools after
    max_rounds, and any ModelError from the client unchanged. In every case
    the transcript keeps all complete rounds.
    """
    if user_text is None or not user_text.strip():
        raise InvalidInput("message must not be empty")
    conversation.append(Turn.user(user_text.strip()))
    return _run_rounds(
        conversation, max_rounds=max_rounds, verbose=verbose, report=report
    )


def continue_turn(
    conversation: Conversation,
    *,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> str:
    """Resume the tool loop without a new user message."""
    last = conversation.last
    if last is None:
        raise InvalidInput("nothing to continue: the conversation is empty")
    if last.role == ASSISTANT and not last.tool_calls:
        raise InvalidInput("nothing to continue: the model already answered")
    return _run_rounds(
        conversation, max_rounds=max_rounds, verbose=verbose, report=report
    )


def run_with_retries(
    conversation: Conversation,
    user_text: str,
    *,
    retries: int = DEFAULT_RETRIES,
    backoff: float = DEFAULT_BACKOFF,
    **loop_kwargs,
) -> str:
    """run_turn, then continue_turn after transient failures with exponential backoff.

    Only RateLimited and TransportError are retried. The user turn is
    appended once, so a retry picks up the conversation where it broke off.
    """
    verbose = loop_kwargs.get("verbose", False)
    report = loop_kwargs.get("report")
    attempt = 0
    while True:
        try:
            if attempt == 0:
                return run_turn(conversation, user_text, **loop_kwargs)
            return continue_turn(conversation, **loop_kwargs)
        except (RateLimited, TransportError) as e:
            if attempt >= retries:
                raise
            delay = backoff * 2**attempt
            attempt += 1
            if verbose:
                fmt.retry(attempt, retries, delay, str(e))
            if report:
                report.record_retry(attempt, delay, str(e))
            time.sleep(delay)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {n}")
    return n


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="mdcode",
        description="Chat with an LLM that can read, list and edit local files, "
        "or flatten a directory into one markdown document.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    sub = parser.add_subparsers(dest="command", metavar="{code,md}")

    code = sub.add_parser("code", help="Run the coding agent.")
    code.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer a single question and exit. Omit to start an interactive session.",
    )
    code.add_argument(
        "--provider",
        choices=list(VENDORS),
        type=str.lower,
        default=_UNSET,
        help="LLM vendor (default: claude).",
    )
    code.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: the vendor's *_MODEL_NAME env var or built-in default).",
    )
    code.add_argument(
        "--api-key",
        type=str,
        default=None,
        help="API key for the provider (overrides env var).",
    )
    code.add_argument(
        "--max-rounds",
        type=_positive_int,
        default=_UNSET,
        help=f"Maximum model round trips per question (default: {DEFAULT_MAX_ROUNDS}).",
    )
    code.add_argument(
        "--max-output-tokens",
        type=_positive_int,
        default=_UNSET,
        help="Maximum output tokens per model call (default: 4096).",
    )
    code.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    code.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        help="Seconds to wait for a model reply (default: 120).",
    )
    code.add_argument(
        "--retries",
        type=int,
        default=_UNSET,
        help=f"Retries on rate limits and connection errors (default: {DEFAULT_RETRIES}).",
    )
    code.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file tools (default: current directory).",
    )

    prompt_group = code.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to include.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    code.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Let file tools reach outside the base directory.",
    )
    code.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Requires a question.",
    )
    code.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final answer.",
    )

    color_group = code.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    code.add_argument(
        "--debug",
        action="store_true",
        help="Log library internals (model requests, tool dispatch) to stderr.",
    )
    code.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template and exit.",
    )
    code.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/mdcode.toml instead of the global file.",
    )

    md = sub.add_parser("md", help="Generate a markdown file from code files.")
    md.add_argument(
        "input_dir",
        nargs="?",
        default=".",
        help="Directory to flatten (default: current directory).",
    )
    md.add_argument(
        "-o",
        "--output",
        default="output.md",
        help="Markdown file to write (default: output.md).",
    )
    md.add_argument(
        "-e",
        "--extensions",
        nargs="+",
        default=None,
        metavar="EXT",
        help="File extensions to include, e.g. py rs toml (default: common source types).",
    )
    md.add_argument(
        "-i",
        "--ignore",
        nargs="+",
        default=[],
        metavar="NAME",
        help="File or directory names to leave out.",
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle --version first
    if args.version:
        try:
            version = metadata.version("mdcode")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.command == "md":
        _run_md(args)
        return
    if args.command != "code":
        parser.error("a command is required: code or md")

    if args.init_config:
        _init_config(args)
        return
    if args.project:
        parser.error("--project is only valid with --init-config")

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if args.system_prompt and args.no_system_prompt:
        parser.error("--system-prompt and --no-system-prompt are mutually exclusive")
    if args.report and args.question is None:
        parser.error("--report requires a question")
    if args.retries < 0:
        parser.error("--retries must not be negative")

    fmt.init(color=args.color, no_color=args.no_color, debug=args.debug)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model or "default",
            provider=args.provider,
            settings={
                "max_rounds": args.max_rounds,
                "max_output_tokens": args.max_output_tokens,
                "temperature": args.temperature,
                "timeout": args.timeout,
                "retries": args.retries,
                "yolo": args.yolo,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_code(args, report, _write_report)
    except RoundLimitExceeded as e:
        fmt.warning(str(e))
        _write_report("exhausted", exit_code=2, error_message=str(e))
        sys.exit(2)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _init_config(args):
    path = config_path(args.base_dir, args.project)
    if path.exists():
        fmt.error(f"{path} already exists, not overwriting")
        sys.exit(1)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config(project=args.project), encoding="utf-8")
    print(path)


def _run_code(args, report, _write_report):
    conversation = build_conversation(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_dir=args.base_dir,
        yolo=args.yolo,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        timeout=args.timeout,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
    )
    client = conversation.client
    if args.verbose:
        fmt.info(f"Using {client.name} model: {client.config.model}")
        if args.yolo:
            fmt.warning("unrestricted mode: file tools can reach outside the base directory")

    if args.question is None:
        repl_loop(
            conversation,
            max_rounds=args.max_rounds,
            retries=args.retries,
            base_dir=args.base_dir,
            verbose=args.verbose,
        )
        return

    answer = run_with_retries(
        conversation,
        args.question,
        retries=args.retries,
        max_rounds=args.max_rounds,
        verbose=args.verbose,
        report=report,
    )
    print(answer)
    _write_report("success", answer=answer)


def _run_md(args):
    from .markdown import DEFAULT_EXTENSIONS, generate_markdown

    fmt.init()
    extensions = args.extensions or DEFAULT_EXTENSIONS
    fmt.info(f"Generating Markdown from '{args.input_dir}' to '{args.output}'...")
    try:
        count = generate_markdown(
            args.input_dir, args.output, extensions=extensions, ignore=args.ignore
        )
    except NotFound as e:
        fmt.error(str(e))
        sys.exit(1)
    except OSError as e:
        fmt.error(f"failed to write {args.output}: {e}")
        sys.exit(1)
    fmt.info(f"Markdown generation complete ({count} files).")


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start a new conversation\n"
        "  /extend [N]        Double max rounds, or set to N\n"
        "  /continue          Resume the agent loop where it stopped\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(conversation: Conversation) -> Conversation:
    """Return a fresh conversation sharing the client, registry and system prompt."""
    dropped = len(conversation)
    fmt.info(f"context cleared ({dropped} turns removed)")
    return Conversation(
        conversation.client,
        conversation.registry,
        system_prompt=conversation.system_prompt,
    )


def _repl_extend(arg: str, state: dict) -> None:
    """Double max rounds (default) or set to a specific value."""
    arg = arg.strip()
    if arg:
        try:
            n = int(arg)
        except ValueError:
            fmt.warning(f"invalid number: {arg}")
            return
        if n < 1:
            fmt.warning("max rounds must be at least 1")
            return
        state["max_rounds"] = n
        fmt.info(f"max rounds set to {n}")
    else:
        old = state["max_rounds"]
        state["max_rounds"] = old * 2
        fmt.info(f"max rounds doubled: {old} -> {old * 2}")


def _repl_step(step, label: str) -> str | None:
    """Run one question or continuation; report recoverable failures and move on."""
    try:
        return step()
    except KeyboardInterrupt:
        fmt.warning(f"interrupted, {label} aborted.")
    except RoundLimitExceeded as e:
        fmt.warning(f"{e}; use /continue or /extend")
    except (AuthError, ConfigError):
        raise
    except AgentError as e:
        fmt.error(str(e))
    return None


def repl_loop(
    conversation: Conversation,
    *,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    retries: int = DEFAULT_RETRIES,
    base_dir: str = ".",
    verbose: bool = True,
) -> None:
    """Interactive read-eval-print loop.

    Returns on /exit, /quit, Ctrl-D or Ctrl-C at the prompt. AuthError and
    ConfigError propagate; other agent errors are shown and the session
    continues with its transcript intact.
    """
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".mdcode", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansiblue", "You: ")])

    if verbose:
        fmt.repl_banner(getattr(conversation.client, "name", "the model"))

    state = {"max_rounds": max_rounds}

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            conversation = _repl_clear(conversation)
            continue
        elif cmd == "/extend":
            _repl_extend(cmd_arg, state)
            continue
        elif cmd == "/continue":
            fmt.info("continuing agent loop...")
            answer = _repl_step(
                lambda: continue_turn(
                    conversation, max_rounds=state["max_rounds"], verbose=verbose
                ),
                "continuation",
            )
        else:
            answer = _repl_step(
                lambda: run_with_retries(
                    conversation,
                    line,
                    retries=retries,
                    max_rounds=state["max_rounds"],
                    verbose=verbose,
                ),
                "question",
            )

        if answer is not None:
            print(answer)


if __name__ == "__main__":
    main()
