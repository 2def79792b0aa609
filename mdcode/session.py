"""Public library API for mdcode: Session class and Result dataclass."""

from dataclasses import dataclass

from .report import ReportCollector, RoundLimitExceeded
from .transcript import Turn


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    turns: tuple[Turn, ...]
    report: dict | None = None


class Session:
    """Programmatic interface to the mdcode agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. Pass `client` to use
    an already-built ModelClient instead of resolving one from the environment.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "claude",
        model: str | None = None,
        api_key: str | None = None,
        client=None,
        max_rounds: int = 50,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
        retries: int = 0,
        yolo: bool = False,
        verbose: bool = False,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.client = client
        self.max_rounds = max_rounds
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.retries = retries
        self.yolo = yolo
        self.verbose = verbose
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt

        self._template = None
        # Shared conversation for ask()
        self._conversation = None

    def _setup(self):
        """Resolve the client and registry once; later conversations reuse them."""
        if self._template is not None:
            return self._template

        from .agent import build_conversation, load_system_prompt
        from .tools import LocalFilesystem, build_registry
        from .transcript import Conversation

        if self.client is None:
            self._template = build_conversation(
                provider=self.provider,
                model=self.model,
                api_key=self.api_key,
                base_dir=self.base_dir,
                yolo=self.yolo,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                timeout=self.timeout,
                system_prompt=self.system_prompt,
                no_system_prompt=self.no_system_prompt,
            )
        else:
            registry = build_registry(LocalFilesystem(self.base_dir, unrestricted=self.yolo))
            self._template = Conversation(
                self.client,
                registry,
                system_prompt=load_system_prompt(self.system_prompt, self.no_system_prompt),
            )

        if self.verbose:
            from . import fmt

            fmt.init()
        return self._template

    def _new_conversation(self):
        from .transcript import Conversation

        template = self._setup()
        return Conversation(
            template.client, template.registry, system_prompt=template.system_prompt
        )

    def _ask(self, conversation, question: str, report=None) -> tuple[str | None, bool]:
        from .agent import run_with_retries

        try:
            answer = run_with_retries(
                conversation,
                question,
                retries=self.retries,
                max_rounds=self.max_rounds,
                verbose=self.verbose,
                report=report,
            )
        except RoundLimitExceeded:
            return None, True
        return answer, False

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with a fresh conversation. Each call is independent."""
        conversation = self._new_conversation()
        collector = ReportCollector() if report else None

        answer, exhausted = self._ask(conversation, question, collector)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self.model or "default",
                provider=self.provider,
                settings={
                    "max_rounds": self.max_rounds,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "retries": self.retries,
                    "yolo": self.yolo,
                },
                outcome="exhausted" if exhausted else "success",
                answer=answer,
                exit_code=2 if exhausted else 0,
            )

        return Result(
            answer=answer,
            exhausted=exhausted,
            turns=conversation.turns,
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        if self._conversation is None:
            self._conversation = self._new_conversation()

        answer, exhausted = self._ask(self._conversation, question)
        return Result(
            answer=answer,
            exhausted=exhausted,
            turns=self._conversation.turns,
        )

    def reset(self) -> None:
        """Drop the shared conversation without redoing setup. Next ask() starts fresh."""
        self._conversation = None
