"""
Realtime call bridge: Twilio Media Streams <-> OpenAI Realtime.

Modules:
- audio: mu-law companding, decimation and 20ms framing
- twilio_protocol: Twilio events and the per-call TelephonyLink
- realtime_protocol / model_link: OpenAI Realtime events and socket
- session: CallSession wiring both links together
"""
