"""Device trees, the plugin manager and the per-device-type server."""