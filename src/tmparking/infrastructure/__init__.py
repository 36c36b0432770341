"""Infrastructure layer: settings, snapshot persistence and messaging"""
