"""Backup and restore of the stack's stateful components.

Modules:
- manifest: BackupManifest / ComponentEntry and the manifest.txt codec
- tools: database tool, file copier and archiver
- engine: BackupEngine
- restore: RestoreEngine
- retention: prefix-scoped age-based sweep
"""
