from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import OutboundStagingPolicy
from ..errors import DeliveryError, InvalidParamsError, StrategiesExhaustedError
from ..ladder import Strategy, first_success
from ..logging import get_logger
from ..models import SendParams
from ..paths import expand_user_path
from ..process import CommandRunner, run_command
from .applescript import (
    CHAT_SCRIPT_TIMEOUT,
    GENERIC_SCRIPT_TIMEOUT,
    SERVICE_SCRIPT_TIMEOUT,
    chat_script,
    generic_buddy_script,
    new_chat_script,
    run_applescript,
    service_buddy_script,
    service_preference,
)
from .containment import assert_safe_outbound_file
from .staging import stage_attachment, sweep_staged_files
from .targets import (
    ChatLookupSource,
    SendTarget,
    is_media_placeholder,
    parse_send_target,
    reclassify,
    resolve_chat_row_id,
)

logger = get_logger("imsg_bridge.outbound.dispatcher")


class SendDispatcher:
    """Validates, stages and delivers outbound messages through Messages.app."""

    def __init__(
        self,
        policy: OutboundStagingPolicy,
        chats: ChatLookupSource,
        *,
        preferred_service: str = "auto",
        runner: CommandRunner = run_command,
    ) -> None:
        self.policy = policy
        self.chats = chats
        self.preferred_service = preferred_service
        self.runner = runner

    async def send(self, params: SendParams) -> Dict[str, Any]:
        target = parse_send_target(params)
        text = params.text or ""
        file_path = expand_user_path(params.file) if params.file else ""

        if target is None:
            raise InvalidParamsError("Missing required parameter: to|chat_id|chat_guid|chat_identifier")
        if not text.strip() and not file_path:
            raise InvalidParamsError("Missing required parameter: text or file")

        # the host sends "<media:image>" etc. when there is no caption
        if file_path and is_media_placeholder(text):
            text = ""
        if not text.strip():
            text = ""

        source_file = assert_safe_outbound_file(file_path, self.policy) if file_path else None

        target = reclassify(target)
        target = await resolve_chat_row_id(target, self.chats)

        staged = await self._stage(source_file) if source_file else None
        await asyncio.to_thread(sweep_staged_files, self.policy.staging_dir, self.policy.staging_ttl_seconds)
        service = params.service or self.preferred_service

        logger.info(
            "send_requested",
            target_kind=target.kind.value,
            service=service,
            has_text=bool(text),
            file=staged.name if staged else None,
        )
        await self.deliver(target, text, str(staged) if staged else None, service)
        return {"ok": True, "messageId": f"sent-{time.time_ns() // 1_000_000}"}

    async def _stage(self, source: Path) -> Path:
        try:
            return await asyncio.to_thread(stage_attachment, source, self.policy.staging_dir)
        except (OSError, shutil.Error) as exc:
            logger.warning("staging_failed_using_original", path=str(source), error=str(exc))
            return source

    def _script_strategy(self, name: str, script: str, timeout: float) -> Strategy[str]:
        async def attempt() -> str:
            return await run_applescript(script, timeout, self.runner)

        return Strategy(name=name, attempt=attempt)

    def build_ladder(
        self,
        target: SendTarget,
        text: str,
        file_path: Optional[str],
        service: Optional[str],
    ) -> List[Strategy[str]]:
        if not target.is_handle:
            # chats are already bound to a service
            return [self._script_strategy("chat", chat_script(target.value, text, file_path), CHAT_SCRIPT_TIMEOUT)]

        services = service_preference(service)
        ladder = [
            self._script_strategy(
                f"new_chat:{svc}",
                new_chat_script(svc, target.value, text, file_path),
                SERVICE_SCRIPT_TIMEOUT,
            )
            for svc in services
        ]
        ladder.extend(
            self._script_strategy(
                f"buddy:{svc}",
                service_buddy_script(svc, target.value, text, file_path),
                SERVICE_SCRIPT_TIMEOUT,
            )
            for svc in services
        )
        ladder.append(
            self._script_strategy(
                "buddy:generic",
                generic_buddy_script(target.value, text, file_path),
                GENERIC_SCRIPT_TIMEOUT,
            )
        )
        return ladder

    async def deliver(
        self,
        target: SendTarget,
        text: str,
        file_path: Optional[str],
        service: Optional[str],
    ) -> None:
        ladder = self.build_ladder(target, text, file_path, service)
        try:
            await first_success(ladder, label="send")
        except StrategiesExhaustedError as exc:
            logger.warning(
                "send_failed",
                target_kind=target.kind.value,
                attempted=exc.attempted,
                error=str(exc.last_error),
            )
            raise DeliveryError(
                f"Failed to send: all delivery strategies exhausted: {exc.last_error}",
                exc.last_error,
            ) from exc.last_error


__all__ = ["SendDispatcher"]
