"""
=============================================================
MONEY MANAGER - Martingale Staking & Stop Conditions
=============================================================
Stake recalculation and take-profit / stop-loss evaluation
for every bot family.

Stake rules:
- WIN: consecutive losses reset, next stake = initial stake
- LOSS: consecutive losses + 1, next stake = settled stake x
  martingale factor (only when martingale is enabled)

Stop priority (first match wins):
1. Take profit       - profit >= target
2. Stop loss amount  - profit <= -amount
3. Stop loss streak  - consecutive losses >= threshold
4. Bulk complete     - trade count reached, no open contracts
5. Max trades        - completed trades >= max trades
=============================================================
"""

import logging
from dataclasses import dataclass
from typing import Optional

from bot_models import Bot, BotConfig, StopLossType, StopReason

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class StakeUpdate:
    """Result of applying one settlement to a bot"""
    settled_stake: float
    next_stake: float
    consecutive_losses: int
    is_win: bool
    martingale_applied: bool


def next_stake_after(config: BotConfig, settled_stake: float, is_win: bool) -> float:
    """
    Stake of the next purchase after a settlement.

    Args:
        config: Bot configuration
        settled_stake: Stake of the contract that just settled
        is_win: Settlement result

    Returns:
        Next stake, never below the configured initial stake on a win
    """
    if is_win or not config.use_martingale:
        return float(config.initial_stake)
    return round(float(settled_stake) * float(config.martingale_factor), 2)


class StakeController:
    """
    Applies settlements to bot counters and decides when a bot stops.

    Stateless: every value it reads or writes lives on the Bot.
    """

    def apply_settlement(self, bot: Bot, settled_stake: float, profit: float,
                         is_win: bool) -> StakeUpdate:
        """Update profit, counters and next stake of a bot"""
        bot.profit += profit
        bot.trades_completed += 1

        if is_win:
            bot.wins += 1
            bot.consecutive_losses = 0
        else:
            bot.losses += 1
            bot.consecutive_losses += 1

        bot.next_stake = next_stake_after(bot.config, settled_stake, is_win)
        martingale_applied = (not is_win) and bot.config.use_martingale

        if martingale_applied:
            logger.info(
                f"📉 {bot.name}: loss #{bot.consecutive_losses}, "
                f"next stake ${bot.next_stake:.2f} (x{bot.config.martingale_factor})"
            )

        return StakeUpdate(
            settled_stake=settled_stake,
            next_stake=bot.next_stake,
            consecutive_losses=bot.consecutive_losses,
            is_win=is_win,
            martingale_applied=martingale_applied,
        )

    def evaluate_stop(self, bot: Bot, outstanding_for_family: int) -> Optional[StopReason]:
        """
        Check the stop conditions in priority order.

        Args:
            bot: Bot after apply_settlement
            outstanding_for_family: Open contracts of the bot's family

        Returns:
            StopReason of the first condition met, or None
        """
        config = bot.config

        if config.take_profit is not None and bot.profit >= float(config.take_profit):
            return StopReason.TAKE_PROFIT

        if (config.stop_loss_type == StopLossType.AMOUNT
                and config.stop_loss_amount is not None
                and bot.profit <= -float(config.stop_loss_amount)):
            return StopReason.STOP_LOSS_AMOUNT

        if (config.stop_loss_type == StopLossType.CONSECUTIVE_LOSSES
                and config.stop_loss_consecutive is not None
                and bot.consecutive_losses >= int(config.stop_loss_consecutive)):
            return StopReason.STOP_LOSS_CONSECUTIVE

        if (config.use_bulk_trading
                and bot.trades_completed >= int(config.bulk_trade_count)
                and outstanding_for_family == 0):
            return StopReason.TRADE_COUNT_REACHED

        if config.max_trades is not None and bot.trades_completed >= int(config.max_trades):
            return StopReason.TRADE_COUNT_REACHED

        return None

    def initial_batch(self, config: BotConfig) -> int:
        """Number of purchases dispatched when a bot starts"""
        return config.bulk_batch_size()

    def may_dispatch(self, bot: Bot) -> bool:
        """
        True if the bot may place another purchase.

        Bulk runs stop dispatching once bulk_trade_count purchases were
        sent; the remaining settlements only drain.
        """
        if not bot.is_running:
            return False
        config = bot.config
        if config.use_bulk_trading and bot.purchases_dispatched >= int(config.bulk_trade_count):
            return False
        if config.max_trades is not None and bot.purchases_dispatched >= int(config.max_trades):
            return False
        return True
