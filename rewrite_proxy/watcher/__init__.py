from rewrite_proxy.watcher.rules_watcher import RulesWatcher

__all__ = ["RulesWatcher"]
