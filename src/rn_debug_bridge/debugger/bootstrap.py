"""JavaScript prologue/epilogue wrapped around the packager's debugger worker.

The wrapped script runs under node with an IPC channel on NODE_CHANNEL_FD and
gives the worker code the browser-worker globals it expects.
"""

from __future__ import annotations

WORKER_BOOTSTRAP = """\
// Initialize some variables before react-native code would access them
var onmessage = null, self = global;
// Host modules are only reachable through this capability object
global.__debug__ = { require: require };
// Keep the debugger's own node version out of the app's sight
Object.defineProperty(process, "versions", { value: undefined });

var __vm = require("vm");
var __fs = require("fs");

function importScripts(scriptPath) {
    var scriptCode = __fs.readFileSync(scriptPath, "utf8");
    __vm.runInThisContext(scriptCode, { filename: scriptPath });
}

var postMessage = function (message) {
    process.send(message);
};

// Imported scripts run against the global object, not this module's scope
self.postMessage = postMessage;
self.importScripts = importScripts;

process.on("message", function (message) {
    var handler = onmessage || global.onmessage;
    if (handler) {
        handler(message);
    }
});
"""

WORKER_DONE = """\
// Notify the bridge that the worker is loaded and listening for messages
postMessage({
    workerLoaded: true,
    debugPort: (function () {
        var inspectorUrl = require("inspector").url();
        return inspectorUrl ? Number(new URL(inspectorUrl).port) : null;
    })(),
});
"""


def patch_debugger_worker(worker_content: str) -> str:
    """Wrap the packager's debugger worker so it can run as a standalone node process."""
    return "\n".join((WORKER_BOOTSTRAP, worker_content, WORKER_DONE))
