#!/usr/bin/env python3
"""
demo/simulate_call.py

Usage:
  python demo/simulate_call.py --from +15550001111 --say "My name is Rose" --say "I grew up on a farm" --say "bye"

Plays the telephony provider against a running app: POSTs the voice webhook, one gather
webhook per --say utterance (stopping early if the reply hangs up) and finally a
`completed` status callback. Prints the TwiML returned at each step.
"""
import argparse
import os
import uuid

import requests

DEFAULT_BASE = "http://localhost:8000"


def post_form(base_url, path, data):
    url = f"{base_url.rstrip('/')}/webhook/twilio/{path}"
    resp = requests.post(url, data=data, timeout=30)
    resp.raise_for_status()
    return resp


def hangs_up(twiml):
    # a reply that keeps listening contains <Gather>; a final one does not
    return "<Gather" not in twiml


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--base", default=os.environ.get("BASE_URL", DEFAULT_BASE))
    parser.add_argument("--call-sid", default=None, help="CallSid to use (random if omitted)")
    parser.add_argument("--from", dest="from_number", required=True)
    parser.add_argument("--to", dest="to_number", default="+15550000000")
    parser.add_argument("--say", action="append", default=[], help="Caller utterance (repeatable)")
    parser.add_argument("--duration", type=int, default=95, help="CallDuration sent with the status callback")
    args = parser.parse_args()

    call_sid = args.call_sid or f"CA{uuid.uuid4().hex}"
    base = {"CallSid": call_sid, "From": args.from_number, "To": args.to_number, "Direction": "inbound"}

    print(f"[info] voice webhook for {call_sid}")
    twiml = post_form(args.base, "voice", {**base, "CallStatus": "in-progress"}).text
    print(twiml)

    for utterance in args.say:
        if hangs_up(twiml):
            print("[info] call ended by the app")
            break
        print(f"[info] caller says: {utterance!r}")
        twiml = post_form(
            args.base, "gather", {**base, "CallStatus": "in-progress", "SpeechResult": utterance, "Confidence": "0.93"}
        ).text
        print(twiml)

    print("[info] status callback: completed")
    resp = post_form(args.base, "status", {**base, "CallStatus": "completed", "CallDuration": str(args.duration)})
    print("[info] status response:", resp.json())


if __name__ == "__main__":
    main()
