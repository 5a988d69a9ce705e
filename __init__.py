"""
Figma Sentinel

This package provides tools for:
- Normalizing Figma API nodes into deterministic design specs
- Storing specs and detecting changes by content hash
- Diffing changed specs and rendering a design changelog and PR body
"""

# Lazy imports to avoid RuntimeWarning when running modules directly
_EXPORTS = {
    'DesignTracker': 'tracker',
    'FetchedNode': 'tracker',
    'FetchFailure': 'tracker',
    'SentinelResult': 'tracker',
    'normalize_node': 'normalizer',
    'to_stable_json': 'normalizer',
    'create_normalizer': 'normalizer',
    'SpecStore': 'storage',
    'SpecRecord': 'storage',
    'SpecInput': 'storage',
    'ChangeDetectionResult': 'storage',
    'compute_content_hash': 'storage',
    'storage_key': 'storage',
    'diff_specs': 'differ',
    'diff_variants': 'differ',
    'generate_changelog_entries': 'differ',
    'ChangelogEntry': 'differ',
    'PropertyChange': 'differ',
    'VariantChange': 'differ',
    'generate_changelog_markdown': 'changelog',
    'generate_pr_body': 'changelog',
    'attach_image_paths': 'changelog',
    'write_changelog': 'changelog',
    'PRMetadata': 'changelog',
    'FigmaSentinelError': 'errors',
    'ErrorAggregator': 'errors',
    'EventChannel': 'events',
    'SentinelConfig': 'config',
    'load_config': 'config',
    'show_status': 'status',
}


def __getattr__(name):
    """Lazy load modules to avoid import issues."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib
    module = importlib.import_module(f".{module_name}", __name__)
    return getattr(module, name)


__all__ = list(_EXPORTS)
