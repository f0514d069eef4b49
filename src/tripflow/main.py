"""
Session service that exposes the conversation core over JSON-RPC.
"""

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional, TextIO

from dotenv import load_dotenv

from . import __version__
from .core.registry import NamespaceRegistry
from .json_rpc import InvalidParamsError, JsonRpcServer
from .models.conversation import ChatIntent
from .services.consistency import DestinationConsistencyValidator
from .services.messages import MessageStore
from .services.session_manager import SessionConfig, SessionManager
from .storage import DEFAULT_QUOTA_BYTES, JsonFileStore, KeyValueStore

logger = logging.getLogger(__name__)

SERVER_NAME = "tripflow-session-server"


def _data_dir() -> str:
    return os.path.expanduser(os.getenv("TRIPFLOW_DATA_DIR", "~/.tripflow"))


def _require(params: Dict[str, Any], name: str, kind: type = str) -> Any:
    value = params.get(name)
    if value is None or not isinstance(value, kind):
        raise InvalidParamsError(f"'{name}' must be a {kind.__name__}")
    return value


class TripflowServer:
    """Wires storage, registry, sessions and messages behind JSON-RPC handlers."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        config: Optional[SessionConfig] = None,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ):
        # Load environment variables at startup
        self._load_env_file()

        self.store = store or self._create_store()
        self.registry = NamespaceRegistry(self.store)
        self.registry.register_defaults()
        self.validator = DestinationConsistencyValidator()
        self.sessions = SessionManager(
            self.registry,
            validator=self.validator,
            config=config or SessionConfig.from_env(),
        )
        self.messages = MessageStore(
            self.registry,
            self.validator,
            destination_provider=lambda: self.sessions.current_destination,
        )

        self.server = JsonRpcServer(SERVER_NAME, stdin=stdin, stdout=stdout)
        self._setup_handlers()

    def _load_env_file(self) -> None:
        """Load .env file from the first of several possible locations."""
        # 1. Directory of the main entry point
        main_dir = os.path.dirname(os.path.abspath(sys.argv[0]))
        # 2. Parent directory of main (in case we're in a subdirectory)
        parent_dir = os.path.dirname(main_dir)
        # 3. Current working directory
        cwd = os.getcwd()
        # 4. Package directory
        script_dir = os.path.dirname(os.path.abspath(__file__))

        env_locations = [
            os.path.join(main_dir, ".env"),
            os.path.join(parent_dir, ".env"),
            os.path.join(cwd, ".env"),
            os.path.join(script_dir, ".env"),
        ]

        for env_path in env_locations:
            if os.path.exists(env_path):
                logger.info(f"Loading .env from {env_path}")
                load_dotenv(env_path)
                return
        logger.debug("No .env file found in expected locations")

    def _create_store(self) -> KeyValueStore:
        path = os.path.join(_data_dir(), "store.json")
        quota = int(os.getenv("TRIPFLOW_STORE_QUOTA_BYTES", str(DEFAULT_QUOTA_BYTES)))
        logger.info(f"Using store {path} (quota {quota} bytes)")
        return JsonFileStore(path, quota_bytes=quota)

    def _setup_handlers(self):
        """Set up JSON-RPC handlers."""
        handlers = {
            "initialize": self.handle_initialize,
            "session/start": self.handle_session_start,
            "session/end": self.handle_session_end,
            "session/track_turn": self.handle_track_turn,
            "session/current": self.handle_session_current,
            "session/history": self.handle_session_history,
            "session/suggestions": self.handle_suggestions,
            "session/is_follow_up": self.handle_is_follow_up,
            "session/analytics": self.handle_analytics,
            "session/visibility": self.handle_visibility,
            "session/clear": self.handle_clear,
            "session/clear_user": self.handle_clear_user,
            "session/export": self.handle_export,
            "session/import": self.handle_import,
            "messages/load": self.handle_messages_load,
            "messages/save": self.handle_messages_save,
            "cache/stats": self.handle_cache_stats,
        }
        for method, handler in handlers.items():
            self.server.register_handler(method, handler)

    def handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Handle initialization request."""
        restored = self.sessions.initialize()
        return {
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "methods": self.server.methods,
            "sessionRestored": restored,
        }

    def handle_session_start(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session = self.sessions.start_session(params.get("userId"), params.get("destination"))
        return session.to_dict()

    def handle_session_end(self, params: Dict[str, Any]) -> Dict[str, Any]:
        had_session = self.sessions.current_session is not None
        self.sessions.end_session()
        return {"ended": had_session}

    def handle_track_turn(self, params: Dict[str, Any]) -> Dict[str, Any]:
        role = _require(params, "role")
        content = _require(params, "content")
        parameters = params.get("parameters")
        if parameters is not None and not isinstance(parameters, dict):
            raise InvalidParamsError("'parameters' must be an object")
        try:
            intent = ChatIntent(params["intent"]) if params.get("intent") else None
            turn_id = self.sessions.track_conversation_turn(
                role, content, intent, parameters, params.get("confidence")
            )
        except ValueError as e:
            raise InvalidParamsError(str(e)) from e

        session = self.sessions.get_current_session()
        return {"turnId": turn_id, "session": session.to_dict() if session else None}

    def handle_session_current(self, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        session = self.sessions.get_current_session()
        return session.to_dict() if session else None

    def handle_session_history(self, params: Dict[str, Any]) -> list:
        limit = params.get("limit", 20)
        if not isinstance(limit, int) or isinstance(limit, bool):
            raise InvalidParamsError("'limit' must be an integer")
        return [t.to_dict() for t in self.sessions.get_conversation_history(limit)]

    def handle_suggestions(self, params: Dict[str, Any]) -> list:
        return self.sessions.get_contextual_suggestions()

    def handle_is_follow_up(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"isFollowUp": self.sessions.is_follow_up_question(_require(params, "text"))}

    def handle_analytics(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.sessions.get_analytics().to_dict()

    def handle_visibility(self, params: Dict[str, Any]) -> Dict[str, Any]:
        visible = _require(params, "visible", bool)
        self.sessions.on_visibility_change(visible)
        return {"visible": visible}

    def handle_clear(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.sessions.clear_all_data()
        return {"cleared": True}

    def handle_clear_user(self, params: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(params, "userId")
        self.sessions.clear_user_data(user_id)
        return {"cleared": True, "userId": user_id}

    def handle_export(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.sessions.export_conversation_data()

    def handle_import(self, params: Dict[str, Any]) -> Dict[str, Any]:
        data = _require(params, "data", dict)
        return {"imported": self.sessions.import_conversation_data(data)}

    def handle_messages_load(self, params: Dict[str, Any]) -> list:
        return self.messages.load_messages(params.get("conversationId"))

    def handle_messages_save(self, params: Dict[str, Any]) -> Dict[str, Any]:
        messages = _require(params, "messages", list)
        self.messages.save_messages(messages, params.get("conversationId"))
        return {"saved": min(len(messages), self.messages.max_messages)}

    def handle_cache_stats(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.registry.get_debug_info()

    async def run(self):
        """Serve until EOF, auto-saving in the background."""
        logger.info(f"Starting Tripflow session server v{__version__}")
        self.sessions.start()
        try:
            await self.server.serve()
        finally:
            await self.sessions.aclose()
            self.messages.close()


def main():
    """Main entry point."""
    # Create logs directory if it doesn't exist
    log_dir = os.path.join(_data_dir(), "logs")
    os.makedirs(log_dir, exist_ok=True)

    # Configure logging with both stderr and file output
    log_file = os.path.join(log_dir, "tripflow-server.log")

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stderr),
        RotatingFileHandler(
            log_file,
            mode="a",
            encoding="utf-8",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,  # Keep 5 backup files
        ),
    ]

    # Use DEBUG level if TRIPFLOW_DEBUG env var is set, otherwise INFO
    log_level = logging.DEBUG if os.getenv("TRIPFLOW_DEBUG") else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,  # Ensure logging is configured even if already configured elsewhere
    )

    logger.info(f"Logging to file: {log_file}")

    try:
        server = TripflowServer()
        asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
