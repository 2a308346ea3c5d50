"""Agent core: loop controller, tools, policy, context and compaction.

Import submodules directly. ``ergon.config`` imports ``ergon.agent.policy``,
so this package must not import the runner.
"""
