"""Change notification package."""

from budget_ledger.notifier.change_notifier import ChangeNotifier, Subscription

__all__ = ["ChangeNotifier", "Subscription"]
