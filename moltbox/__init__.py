"""OpenClaw sandbox runtime: config materialisation, durable state, gateway supervision and proxy."""
