"""Conversation Controller: the per-channel execution state machine.

One instance owns all mutable engine state (channel store, active run
registry, pending retries, throttled updates) and is the only object
that talks to every collaborator. All methods run on one asyncio
loop, so no locks guard the maps.

Channel phases:
    idle --prompt, no project--> awaiting_project (prompt stashed)
    awaiting_project --project selected--> running (stashed prompt)
    idle --prompt, project bound--> running
    running --run settles--> idle
    running --stop--> running (aborted) --run settles--> idle

A prompt (or retry confirmation) that arrives while the channel is
running is rejected with a reply; it is neither queued nor allowed to
replace the in-flight run.
"""
from __future__ import annotations

import logging
from datetime import datetime

from heimerdinger.adapters.base import (
    ChatAdapter,
    IncomingMessage,
    InteractiveAction,
    MessageContext,
)

from . import rendering
from .chunks import RunOutput, StreamChunk
from .commands import format_help, parse_command
from .config import BridgeConfig
from .errors import RetryExpiredError
from .executor import ClaudeExecutor
from .history import ClaudeHistory
from .models import (
    ActiveExecution,
    ChannelPhase,
    ChannelState,
    ClaudeProject,
    FileChange,
    MessageRef,
    PendingRetry,
    PermissionDenial,
    PermissionMode,
)
from .retry import RetryWorkflow
from .session_resolver import SessionResolver
from .session_store import SessionStore
from .throttle import ThrottledUpdater

logger = logging.getLogger(__name__)

NO_PROJECTS_TEXT = (
    "No Claude Code projects found. Please use Claude Code in a project directory first."
)
BUSY_TEXT = (
    "Claude is still working on the previous request in this channel. "
    "Send `stop` to cancel it first."
)


class ConversationController:
    """Routes chat messages and interactions to Claude CLI runs."""

    def __init__(
        self,
        adapter: ChatAdapter,
        config: BridgeConfig | None = None,
        *,
        store: SessionStore | None = None,
        history: ClaudeHistory | None = None,
        executor: ClaudeExecutor | None = None,
        retries: RetryWorkflow | None = None,
    ) -> None:
        self._adapter = adapter
        self._config = config or BridgeConfig()
        self._store = store or SessionStore(self._config.state_file)
        self._history = history or ClaudeHistory(
            self._config.claude_projects_dir, self._config.claude_config_file,
        )
        self._executor = executor or ClaudeExecutor(self._config.claude_command)
        self._retries = retries or RetryWorkflow(
            ttl_seconds=self._config.retry_ttl_seconds,
            max_pending=self._config.retry_max_pending,
        )
        self._resolver = SessionResolver(self._store, self._history)
        self._updater = ThrottledUpdater(
            self._apply_update, interval=self._config.update_interval_seconds,
        )
        self._active: dict[str, ActiveExecution] = {}

    # ── Introspection ──

    @property
    def adapter(self) -> ChatAdapter:
        return self._adapter

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def retries(self) -> RetryWorkflow:
        return self._retries

    def active_execution(self, channel_id: str) -> ActiveExecution | None:
        return self._active.get(channel_id)

    def phase(self, channel_id: str) -> ChannelPhase:
        if channel_id in self._active:
            return ChannelPhase.RUNNING
        state = self._store.get_channel(channel_id)
        if state is not None and state.pending_prompt:
            return ChannelPhase.AWAITING_PROJECT
        return ChannelPhase.IDLE

    def status(self) -> dict:
        return {
            "adapter": self._adapter.name,
            "project_dir": self._config.project_dir,
            "channels": len(self._store.channel_ids()),
            "active_runs": len(self._active),
            "pending_retries": len(self._retries),
        }

    # ── Entry points ──

    async def handle_message(self, message: IncomingMessage) -> None:
        """Dispatch a text command, or run the text as a prompt."""
        context = message.context
        text = message.text.strip()
        if not text:
            return
        command = parse_command(text)
        logger.info(
            "handle_message channel=%s command=%s",
            context.channel_id, command.name if command else "<prompt>",
        )
        try:
            if command is None:
                await self.handle_prompt(context, text)
            elif command.name == "help":
                await self._reply(context, format_help())
            elif command.name == "projects":
                await self.send_project_list(context)
            elif command.name == "status":
                await self.send_status(context)
            elif command.name == "project":
                if command.arg:
                    await self.select_project(context, command.arg)
                else:
                    await self.show_project_selector(context)
            elif command.name == "session":
                await self.select_session(context, command.arg)
            elif command.name == "stop":
                await self.stop(context)
            elif command.name == "clear":
                await self.clear_session(context)
            elif command.name == "retry":
                await self.confirm_retry(context, command.arg)
        except Exception as exc:
            logger.exception("handle_message failed for channel %s", context.channel_id)
            await self._reply(context, rendering.render_error(exc))

    async def handle_interaction(
        self,
        action: str,
        value: str,
        context: MessageContext,
    ) -> None:
        """Handle a button/card callback from the chat platform."""
        logger.debug("Interaction: %s = %s", action, value)
        handlers = {
            "select_project": lambda: self.select_project_and_execute(context, value),
            "show_project_selector": lambda: self.show_project_selector(context),
            "select_session": lambda: self.select_session(context, value),
            "new_session": lambda: self.start_new_session(context),
            "retry_with_permissions": lambda: self.confirm_retry(context, value),
            "cancel_retry": lambda: self.cancel_retry(context, value),
            "stop_execution": lambda: self.stop(context),
            "clear_session": lambda: self.clear_session(context),
        }
        handler = handlers.get(action)
        if handler is None:
            logger.warning("Ignoring unknown interaction action: %s", action)
            return
        try:
            await handler()
        except Exception as exc:
            logger.exception("Interaction %s failed for channel %s", action, context.channel_id)
            await self._reply(context, rendering.render_error(exc))

    async def handle_prompt(self, context: MessageContext, prompt: str) -> None:
        channel = context.channel_id
        if channel in self._active:
            logger.info("Rejecting prompt for busy channel %s", channel)
            await self._reply(context, BUSY_TEXT)
            return

        state = self._store.channel(channel)
        project_dir = state.project_path or self._config.project_dir
        if not project_dir:
            await self._request_project(context, state, prompt)
            return

        session_id = self._resolver.resolve(project_dir, state.session_id)
        await self._run(
            context, prompt,
            project_dir=project_dir,
            session_id=session_id,
            permission_mode=self._config.permission_mode,
            processing_text=rendering.PROCESSING_TEXT,
        )

    # ── Project and session selection ──

    async def send_project_list(self, context: MessageContext) -> None:
        projects = self._history.list_projects()
        if not projects:
            await self._reply(context, NO_PROJECTS_TEXT)
            return
        lines = [f"{i}. {p.name} - {p.path}" for i, p in enumerate(projects, 1)]
        await self._reply(
            context,
            "Available projects:\n\n" + "\n".join(lines)
            + "\n\nUse `/project <name>` to select one.",
        )

    async def send_status(self, context: MessageContext) -> None:
        state = self._store.get_channel(context.channel_id)
        lines = ["Current status:", ""]
        if state is not None and state.project_path:
            lines.append(f"Project: {state.project_path}")
        elif self._config.project_dir:
            lines.append(f"Default project: {self._config.project_dir}")
        else:
            lines.append("Project: (not selected)")
        if state is not None and state.session_id:
            lines.append(f"Session: {state.session_id[:8]}...")
        else:
            lines.append("Session: (new session)")
        lines.append(f"State: {self.phase(context.channel_id).value}")
        await self._reply(context, "\n".join(lines))

    async def show_project_selector(self, context: MessageContext) -> None:
        projects = self._history.list_projects()
        if not projects:
            await self._reply(context, NO_PROJECTS_TEXT)
            return
        state = self._store.get_channel(context.channel_id)
        current = (state.project_path if state else None) or self._config.project_dir
        prompt = f"Current: {current}" if current else "Select a project"
        await self._send_project_choice(context, projects, prompt)

    async def select_project(self, context: MessageContext, name: str) -> None:
        """Bind the channel to a project by name or path, then list its sessions."""
        project = self._history.find_project(name)
        if project is None:
            await self._reply(
                context,
                f'Project "{name}" not found. Use `/projects` to see available projects.',
            )
            return

        state = self._bind_project(context.channel_id, project.path)
        sessions = self._history.list_sessions(project.path)
        saved = self._store.project_session(project.path)

        lines = [f"Selected project: {project.name}"]
        resume = None
        if saved:
            resume = next((s for s in sessions if s.session_id == saved), None)
        elif sessions:
            resume = sessions[0]
        if resume is not None:
            lines += ["", f"Will resume session: {resume.session_id[:8]}...", resume.label]
        if sessions:
            lines += ["", "Recent sessions:", rendering.format_session_list(sessions)]
            lines += ["", "Use `/session <id>` to switch, or `/session new` for a fresh start."]
        else:
            lines += ["", "No previous sessions. Send a message to start coding!"]
        await self._reply(context, "\n".join(lines))
        await self._run_pending(context, state)

    async def select_project_and_execute(
        self,
        context: MessageContext,
        project: str,
    ) -> None:
        """Project chosen from a selection card; runs any stashed prompt."""
        known = self._history.find_project(project)
        path = known.path if known is not None else project
        state = self._bind_project(context.channel_id, path)
        await self._reply(context, f"Selected project: {path}")
        await self._run_pending(context, state)

    async def select_session(self, context: MessageContext, session: str) -> None:
        """Resume a session by id prefix, or ``new`` for a fresh one."""
        state = self._store.channel(context.channel_id)
        if not state.project_path:
            await self._reply(context, "Please select a project first with `/project <name>`")
            return
        if session.strip().lower() == "new":
            await self.start_new_session(context)
            return

        found = self._history.find_session(state.project_path, session)
        if found is None:
            await self._reply(context, f'Session "{session}" not found in current project.')
            return
        state.session_id = found.session_id
        self._store.set_project_session(state.project_path, found.session_id)
        self._store.persist()
        await self._reply(context, f"Switched to session: {found.label}")

    async def start_new_session(self, context: MessageContext) -> None:
        state = self._store.channel(context.channel_id)
        self._forget_session(state)
        await self._reply(context, "Next message will start a new session.")

    async def clear_session(self, context: MessageContext) -> None:
        state = self._store.get_channel(context.channel_id)
        if state is None or not state.project_path:
            await self._reply(context, "No project selected; nothing to clear.")
            return
        self._forget_session(state)
        logger.info(
            "Session cleared for channel %s, project %s",
            context.channel_id, state.project_path,
        )
        await self._reply(
            context,
            f"Session cleared. The next message starts a new conversation in {state.project_path}.",
        )

    # ── Stop ──

    async def stop(self, context: MessageContext) -> None:
        """Abort the channel's run and mark its message as stopped."""
        channel = context.channel_id
        active = self._active.get(channel)
        if active is None:
            others = len(self._active)
            if others:
                text = f"{others} task(s) running, but none in this channel."
            else:
                text = "No task is running."
            logger.warning("No execution found for channel %s", channel)
            await self._reply(context, text)
            return
        if active.aborted:
            logger.debug("Execution for channel %s already stopped", channel)
            return

        active.cancel()
        logger.info("Execution stopped for channel %s", channel)
        if active.message is None:
            # Progress message still in flight; _run marks it stopped once posted.
            return
        self._updater.discard(active.message)
        try:
            await self._adapter.update_message(
                channel, active.message.message_id, rendering.STOPPED_TEXT,
            )
        except Exception as exc:
            logger.warning("Failed to mark message stopped, sending new: %s", exc)
            await self._reply(context, "Stopped the current task.")

    # ── Retry workflow ──

    async def offer_retry(
        self,
        context: MessageContext,
        denials: list[PermissionDenial],
        snapshot: PendingRetry,
    ) -> str:
        """Store a retry offer and present accept/cancel to the user."""
        snapshot.denials = list(denials)
        retry_id = self._retries.offer(snapshot)
        logger.info("Offering retry %s for %d permission denial(s)", retry_id, len(denials))
        try:
            if self._adapter.supports_interactive:
                await self._adapter.send_interactive_message(
                    context.channel_id,
                    rendering.retry_prompt_text(denials),
                    [
                        InteractiveAction(
                            "retry_with_permissions", "Authorize & Retry", retry_id, "primary",
                        ),
                        InteractiveAction("cancel_retry", "Cancel", retry_id),
                    ],
                )
            else:
                await self._adapter.send_message(
                    context.channel_id,
                    rendering.retry_fallback_text(retry_id),
                    context.thread_id,
                )
        except Exception as exc:
            logger.error("Failed to send retry offer %s: %s", retry_id, exc)
        return retry_id

    async def confirm_retry(self, context: MessageContext, retry_id: str) -> None:
        """Re-run an offered prompt with the elevated permission mode."""
        if context.channel_id in self._active:
            await self._reply(context, BUSY_TEXT)
            return
        try:
            pending = self._retries.claim(retry_id)
        except RetryExpiredError:
            logger.info("Retry %s expired or unknown", retry_id)
            await self._reply(context, "Retry request expired or not found.")
            return

        await self._reply(context, "Retrying with full permissions...")
        mode = self._config.retry_permission_mode
        session_id = self._resolver.resolve(pending.project_path, pending.session_id)
        await self._run(
            context, pending.prompt,
            project_dir=pending.project_path,
            session_id=session_id,
            permission_mode=mode,
            processing_text=rendering.ELEVATED_PROCESSING_TEXT,
        )

    async def cancel_retry(self, context: MessageContext, retry_id: str) -> None:
        if not self._retries.cancel(retry_id):
            logger.debug("cancel_retry: %s was not pending", retry_id)
        await self._reply(context, "Retry cancelled.")

    # ── Lifecycle ──

    async def announce_online(self) -> None:
        """Tell every known channel that the bridge is up."""
        text = f"Heimerdinger online ({datetime.now().strftime('%H:%M:%S')})"
        for channel_id in self._store.channel_ids():
            try:
                await self._adapter.send_message(channel_id, text)
            except Exception as exc:
                logger.warning("Failed to notify channel %s: %s", channel_id, exc)

    def shutdown(self) -> None:
        """Abort every active run and drop pending message updates."""
        for channel_id, active in list(self._active.items()):
            logger.info("Shutdown: aborting run in channel %s", channel_id)
            active.cancel()
        self._updater.close()

    # ── Internals ──

    async def _reply(self, context: MessageContext, text: str) -> str | None:
        try:
            return await self._adapter.send_message(
                context.channel_id,
                rendering.fit_message(text, self._adapter.max_message_bytes),
            )
        except Exception as exc:
            logger.error("Failed to send message to %s: %s", context.channel_id, exc)
            return None

    async def _apply_update(self, ref: MessageRef, text: str) -> None:
        await self._adapter.update_message(ref.channel_id, ref.message_id, text)

    def _bind_project(self, channel_id: str, project_path: str) -> ChannelState:
        state = self._store.channel(channel_id)
        state.project_path = project_path
        # Resolved later from the project map or Claude's history.
        state.session_id = None
        self._store.persist()
        logger.info("Channel %s bound to project %s", channel_id, project_path)
        return state

    def _forget_session(self, state: ChannelState) -> None:
        state.session_id = None
        if state.project_path:
            self._store.clear_project_session(state.project_path)
        self._store.persist()

    async def _run_pending(self, context: MessageContext, state: ChannelState) -> None:
        prompt = state.pending_prompt
        if prompt:
            state.pending_prompt = None
            self._store.persist()
            await self.handle_prompt(context, prompt)

    async def _request_project(
        self,
        context: MessageContext,
        state: ChannelState,
        prompt: str,
    ) -> None:
        projects = self._history.list_projects()
        if not projects:
            await self._reply(context, NO_PROJECTS_TEXT)
            return
        state.pending_prompt = prompt
        self._store.persist()
        logger.info("Channel %s awaiting project selection", context.channel_id)
        await self._send_project_choice(context, projects, prompt)

    async def _send_project_choice(
        self,
        context: MessageContext,
        projects: list[ClaudeProject],
        prompt: str,
    ) -> None:
        if self._adapter.supports_project_cards:
            try:
                await self._adapter.send_project_selection_card(
                    context.channel_id, projects, prompt,
                )
                return
            except Exception as exc:
                logger.warning("Project card failed, falling back to text: %s", exc)
        await self._reply(
            context,
            "Please select a project first:\n"
            + rendering.format_project_list(projects)
            + "\n\nUse `/project <name>` to select one.",
        )

    async def _run(
        self,
        context: MessageContext,
        prompt: str,
        *,
        project_dir: str,
        session_id: str | None,
        permission_mode: PermissionMode,
        processing_text: str,
    ) -> None:
        """Drive one run from progress message to terminal render."""
        channel = context.channel_id
        # Reserve the channel before the first await so stop works at once.
        active = ActiveExecution(permission_mode=permission_mode)
        self._active[channel] = active
        try:
            message_id = await self._adapter.send_message(channel, processing_text)
        except Exception as exc:
            logger.error("Failed to post progress message in %s: %s", channel, exc)
            self._release(channel, active)
            if active.aborted:
                await self._reply(context, rendering.STOPPED_TEXT)
            return

        ref = MessageRef(channel, message_id)
        active.message = ref
        if active.aborted:
            logger.info("Run in %s stopped before start", channel)
            self._release(channel, active)
            await self._finalize(ref, rendering.STOPPED_TEXT)
            return

        output = RunOutput()
        limit = self._adapter.max_message_bytes

        async def on_chunk(chunk: StreamChunk) -> None:
            if active.aborted:
                return
            if output.apply(chunk) and not output.finished:
                await self._updater.push(
                    ref, rendering.fit_message(rendering.with_progress(output.text), limit),
                )

        logger.info(
            "Run start channel=%s project=%s session=%s mode=%s",
            channel, project_dir,
            f"{session_id[:8]}..." if session_id else "<new>",
            permission_mode.value,
        )
        try:
            execution = self._executor.execute(
                project_dir, prompt,
                session_id=session_id,
                permission_mode=permission_mode,
                on_chunk=on_chunk,
            )
            active.abort = execution.abort
            if active.aborted:
                execution.abort()
            result = await execution.wait()
        except Exception as exc:
            if active.aborted:
                logger.info("Run in %s aborted (%s)", channel, exc)
                return
            logger.error("Error executing Claude in %s: %s", channel, exc)
            self._updater.discard(ref)
            await self._finalize(ref, rendering.render_error(exc))
            return
        finally:
            self._release(channel, active)

        if active.aborted:
            logger.info("Run in %s finished after stop; not rendering", channel)
            return
        await self._complete(context, ref, prompt, project_dir, output, result)

    async def _complete(
        self,
        context: MessageContext,
        ref: MessageRef,
        prompt: str,
        project_dir: str,
        output: RunOutput,
        result: StreamChunk | None,
    ) -> None:
        self._updater.discard(ref)
        state = self._store.channel(context.channel_id)
        if result is not None and result.session_id:
            logger.info("Session saved: %s...", result.session_id[:8])
            state.session_id = result.session_id
            state.project_path = project_dir
            self._store.set_project_session(project_dir, result.session_id)
            self._store.persist()

        final = rendering.render_final(output.text, result)
        await self._finalize(
            ref, rendering.fit_message(final, self._adapter.max_message_bytes),
        )

        if result is not None and result.permission_denials:
            await self.offer_retry(
                context,
                result.permission_denials,
                PendingRetry(
                    prompt=prompt,
                    project_path=project_dir,
                    channel_id=context.channel_id,
                    session_id=state.session_id,
                ),
            )

        if output.file_changes:
            await self._show_file_changes(ref, output.file_changes)

    async def _finalize(self, ref: MessageRef, text: str) -> None:
        """Terminal render: update the run message, else send it anew."""
        try:
            await self._adapter.update_message(ref.channel_id, ref.message_id, text)
        except Exception as exc:
            logger.warning("Failed to update final message, sending as new: %s", exc)
            try:
                await self._adapter.send_message(ref.channel_id, text)
            except Exception as send_exc:
                logger.error("Final message lost for %s: %s", ref.channel_id, send_exc)

    async def _show_file_changes(self, ref: MessageRef, changes: list[FileChange]) -> None:
        diffs = rendering.build_file_diffs(changes)
        logger.info("Showing %d file change(s) in thread", len(diffs))
        for diff in diffs:
            if self._adapter.supports_snippets:
                try:
                    await self._adapter.upload_snippet(
                        ref.channel_id, diff.content,
                        filename=diff.filename,
                        title=diff.title,
                        thread_id=ref.message_id,
                    )
                    continue
                except Exception as exc:
                    logger.warning("Snippet upload failed: %s", exc)
            try:
                await self._adapter.send_message(
                    ref.channel_id, diff.as_message(), ref.message_id,
                )
            except Exception as exc:
                logger.error("Failed to show file changes for %s: %s", diff.path, exc)

    def _release(self, channel_id: str, active: ActiveExecution) -> None:
        if self._active.get(channel_id) is active:
            del self._active[channel_id]
