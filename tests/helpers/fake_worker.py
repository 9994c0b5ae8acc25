"""
tests/helpers/fake_worker.py
----------------------------
Scripted stand-in for the analysis worker, used by the integration tests.

Launched exactly like the real worker::

    python fake_worker.py --knime-bridge-address=tcp://127.0.0.1:PORT

Pipeline "language": the pipeline bytes are scanned for keywords.
  * ``MALFORMED``  -> pipeline-exception-1 on pipeline-info
  * ``FAIL_RUN``   -> cellprofiler-exception-1 on every run
  * ``SLOW_RUN``   -> sleeps 30 s before answering a run

Every pipeline takes channels ``DNA`` and ``Protein`` and produces tables
``Image`` and ``Nuclei``. A nucleus is any DNA sample >= 0.5.
"""

import json
import sys
import time

import numpy as np
import zmq

CHANNELS = ["DNA", "Protein"]
TYPE_NAMES = ["double", "float", "int", "string"]
DECLARED = {
    "Image": [
        ["Intensity_MeanIntensity_DNA", 0],
        ["Intensity_MeanIntensity_Protein", 0],
        ["Threshold_FinalThreshold_DNA", 1],
        ["Count_Nuclei", 2],
        ["Metadata_RunMode", 3],
    ],
    "Nuclei": [
        ["AreaShape_Area", 0],
        ["Location_Center_X", 0],
        ["Number_Object_Number", 2],
    ],
}


def _address(argv):
    for arg in argv[1:]:
        if arg.startswith("--knime-bridge-address="):
            return arg.split("=", 1)[1]
    raise SystemExit("missing --knime-bridge-address")


def _decode_images(metadata_frame, buffers):
    images = {}
    for (channel, axes), buf in zip(json.loads(metadata_frame.decode("utf-8")), buffers):
        shape = tuple(a["size"] for a in axes)
        images[channel] = np.frombuffer(buf, dtype="<f4").reshape(shape)
    return images


def _analyse(images, mode):
    dna = images["DNA"]
    protein = images["Protein"]
    hits = np.argwhere(dna >= 0.5)
    n = len(hits)

    doubles = [
        ["Image", [
            ["Intensity_MeanIntensity_DNA", np.array([dna.mean()], "<f8")],
            ["Intensity_MeanIntensity_Protein", np.array([protein.mean()], "<f8")],
        ]],
        ["Nuclei", [
            ["AreaShape_Area", np.ones(n, "<f8")],
            ["Location_Center_X", hits[:, -1].astype("<f8")],
        ]],
    ]
    floats = [["Image", [["Threshold_FinalThreshold_DNA", np.array([0.5], "<f4")]]]]
    ints = [
        ["Image", [["Count_Nuclei", np.array([n], "<i4")]]],
        ["Nuclei", [["Number_Object_Number", np.arange(1, n + 1, dtype="<i4")]]],
    ]
    strings = [["Image", [["Metadata_RunMode", mode.encode("utf-8")]]]]

    metadata = []
    data = bytearray()
    for section in (doubles, floats, ints):
        meta_section = []
        for table, features in section:
            meta_section.append([table, [[name, int(len(values))] for name, values in features]])
            for _, values in features:
                data += values.tobytes()
        metadata.append(meta_section)
    meta_strings = []
    for table, features in strings:
        meta_strings.append([table, [[name, len(raw)] for name, raw in features]])
        for _, raw in features:
            data += raw
    metadata.append(meta_strings)
    return [json.dumps(metadata).encode("utf-8"), bytes(data)]


def serve(address):
    context = zmq.Context()
    socket = context.socket(zmq.REP)
    socket.setsockopt(zmq.LINGER, 0)
    socket.bind(address)
    print(f"fake worker listening on {address}", flush=True)
    print("warning: this is not a real analysis worker", file=sys.stderr, flush=True)

    while True:
        session_id, _, message_type, *body = socket.recv_multipart()
        reply = [session_id, b""]

        if message_type == b"connect-request-1":
            reply += [b"connect-reply-1"]
        elif message_type == b"pipeline-info-req-1":
            if b"MALFORMED" in body[0]:
                reply += [b"pipeline-exception-1", b"Could not parse pipeline"]
            else:
                info = [CHANNELS, TYPE_NAMES, DECLARED]
                reply += [b"pipeline-info-reply-1", json.dumps(info).encode("utf-8")]
        elif message_type == b"clean-pipeline-request-1":
            reply += [b"clean-pipeline-reply-1", body[0].strip()]
        elif message_type in (b"run-request-1", b"run-group-request-1"):
            pipeline, metadata_frame, *buffers = body
            print(f"{message_type.decode()} with {len(buffers)} image(s)", flush=True)
            if b"SLOW_RUN" in pipeline:
                time.sleep(30)
            if b"FAIL_RUN" in pipeline:
                reply += [b"cellprofiler-exception-1", b"Module IdentifyPrimaryObjects failed"]
            else:
                mode = "run-group" if message_type == b"run-group-request-1" else "run"
                reply += [b"run-reply-1", *_analyse(_decode_images(metadata_frame, buffers), mode)]
        else:
            reply += [b"no-such-reply", message_type]
        socket.send_multipart(reply)


if __name__ == "__main__":
    serve(_address(sys.argv))
