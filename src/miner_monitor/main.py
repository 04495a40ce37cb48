"""
Miner Monitor - Main Entry Point

Usage:
    miner-monitor [--config CONFIG_PATH] [--log-level LEVEL]
    python -m miner_monitor.main --config /etc/miner-monitor.ini

Configuration:
    The monitor reads configuration from:
    1. An INI file (see miner_monitor.config for the format)
    2. Environment variables (a .env file in the working directory is loaded)
    3. Command line arguments

Environment Variables:
    MINER_MONITOR_CONFIG      Path to the INI file (default: miner-monitor.ini)
    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)
    WALLET_B58_PUBKEY         Scope wallet account/balance queries to this key
    DASHBOARD_HOST            Override [dashboard] host
    DASHBOARD_PORT            Override [dashboard] port

Services:
    - scheduler: polls every miner on its own timer
    - wallet:    chained RPC polling of the wallet node
    - proxy:     wallet pass-through that registers connecting miners
    - dashboard: REST + WebSocket view of the current state
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from miner_monitor.config import DEFAULT_CONFIG_PATH, ConfigError, MonitorConfig
from miner_monitor.core import (
    EventBus,
    RegistrationBridge,
    TargetScheduler,
    WalletMonitor,
    WalletState,
)
from miner_monitor.ingestion import MinerProbe, WalletProxy, WalletRPCClient
from miner_monitor.monitoring import DashboardState, create_dashboard_app

# Configure logging before anything logs
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


class MonitorApp:
    """
    Main orchestrator.

    Manages the lifecycle of all components:
    - Event bus (shared by everything below)
    - Target scheduler + miner probe
    - Wallet monitor + RPC client (if [wallet] is enabled)
    - Wallet proxy + registration bridge (if [proxy] is enabled)
    - Dashboard (if [dashboard] is enabled)
    """

    def __init__(self, config: MonitorConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.bus: Optional[EventBus] = None
        self.probe: Optional[MinerProbe] = None
        self.scheduler: Optional[TargetScheduler] = None
        self.wallet_client: Optional[WalletRPCClient] = None
        self.wallet_monitor: Optional[WalletMonitor] = None
        self.bridge: Optional[RegistrationBridge] = None
        self.proxy: Optional[WalletProxy] = None
        self.dashboard_state: Optional[DashboardState] = None
        self._dashboard_server = None
        self._dashboard_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Build and start every configured component."""
        logger.info("=" * 60)
        logger.info("MINER MONITOR")
        logger.info("=" * 60)

        self._running = True
        self._shutdown_event.clear()

        self.bus = EventBus()

        # Consumers subscribe before the first poll publishes
        if self.config.dashboard:
            self.dashboard_state = DashboardState(self.bus)
            self.dashboard_state.attach()

        self.probe = MinerProbe(watchdog_multiplier=self.config.watchdog_multiplier)
        self.scheduler = TargetScheduler(
            bus=self.bus,
            probe=self.probe,
            discoveries=self.config.discoveries,
            servers=self.config.servers,
        )

        if self.config.proxy:
            self.bridge = RegistrationBridge(self.bus, self.scheduler)
            self.bridge.attach()

        if self.config.dashboard:
            await self._start_dashboard()

        self.scheduler.start()
        logger.info(f"Scheduler: {len(self.scheduler.targets)} targets")

        if self.config.wallet:
            wallet = self.config.wallet
            self.wallet_client = WalletRPCClient(
                wallet.rpc_url,
                b58_pubkey=wallet.b58_pubkey,
                timeout=wallet.timeout,
            )
            await self.wallet_client.__aenter__()
            self.wallet_monitor = WalletMonitor(
                bus=self.bus,
                client=self.wallet_client,
                state=WalletState(
                    ip=wallet.ip,
                    port=wallet.port,
                    interval=wallet.interval,
                    b58_pubkey=wallet.b58_pubkey,
                ),
                interval=wallet.interval,
            )
            await self.wallet_monitor.start()
            logger.info(f"Wallet: polling {wallet.rpc_url}")

        if self.config.proxy:
            self.proxy = WalletProxy(self.config.proxy, self.bus)
            await self.proxy.start()

        logger.info("Monitor started successfully")

    async def run(self) -> None:
        """Start, then block until a shutdown signal arrives."""
        self._setup_signal_handlers()
        try:
            await self.start()
            logger.info("Press Ctrl+C to stop")
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop all components in reverse order."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self.proxy:
            try:
                await self.proxy.stop()
            except Exception as e:
                logger.warning(f"Error stopping proxy: {e}")

        if self.bridge:
            self.bridge.detach()

        if self.wallet_monitor:
            try:
                await self.wallet_monitor.stop()
            except Exception as e:
                logger.warning(f"Error stopping wallet monitor: {e}")

        if self.wallet_client:
            try:
                await self.wallet_client.close()
            except Exception as e:
                logger.warning(f"Error closing wallet client: {e}")

        if self.scheduler:
            try:
                await self.scheduler.stop()
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")

        if self.probe:
            await self.probe.close()

        await self._stop_dashboard()

        if self.bus:
            await self.bus.close()

        logger.info("Shutdown complete")

    def request_shutdown(self, reason: str = "manual") -> None:
        logger.info(f"Shutdown requested: {reason}")
        self._shutdown_event.set()

    async def _start_dashboard(self) -> None:
        """Start the dashboard server in the background."""
        import uvicorn

        dashboard = self.config.dashboard
        app = create_dashboard_app(self.dashboard_state)
        server_config = uvicorn.Config(
            app,
            host=dashboard.host,
            port=dashboard.port,
            ws_ping_interval=dashboard.ping_interval,
            log_level="warning",
        )
        self._dashboard_server = uvicorn.Server(server_config)
        # uvicorn must not replace our signal handlers
        self._dashboard_server.install_signal_handlers = lambda: None

        self._dashboard_task = asyncio.create_task(
            self._dashboard_server.serve(),
            name="dashboard",
        )
        logger.info(f"Dashboard started at http://{dashboard.host}:{dashboard.port}")

    async def _stop_dashboard(self) -> None:
        if self.dashboard_state:
            self.dashboard_state.detach()

        if not self._dashboard_task:
            return

        if self._dashboard_server:
            self._dashboard_server.should_exit = True
        try:
            await asyncio.wait_for(self._dashboard_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._dashboard_task.cancel()
        except Exception as e:
            logger.warning(f"Error stopping dashboard: {e}")
        self._dashboard_task = None

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Miner and wallet monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Path to configuration file (default: $MINER_MONITOR_CONFIG or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> MonitorConfig:
    """Resolve the config path and load it."""
    path = args.config or os.environ.get("MINER_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)
    config = MonitorConfig.from_file(path)
    config.apply_env()
    return config


async def main_async(config: MonitorConfig) -> int:
    """Async main function."""
    app = MonitorApp(config)
    try:
        await app.run()
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_env_file()

    args = parse_args(argv)
    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        return asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0


if __name__ == "__main__":
    sys.exit(main())
