"""
Notifications — push fan-out through per-provider circuit breakers.

- Producers TRIGGER an operation onto the notifications queue
- The dispatcher FANS OUT per recipient: preference, template, devices
- Providers (FCM, APNs, log) report typed results; dead tokens are revoked
"""
