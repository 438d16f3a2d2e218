"""
Builders for the script source handed to ``session.create_script``.

Two injection modes exist:

    build_direct_script            the user's instrumentation script, as is
    build_managed_runtime_wrapper  plain JavaScript to run inside a Node.js
                                   target's own V8 context

Both are pure: the same input always yields byte-identical output.
"""

from __future__ import annotations

import json


# Itanium-mangled V8 entry points exported by the node binary.
V8_SYMBOLS = {
    "isolateGetCurrent": "_ZN2v87Isolate10GetCurrentEv",
    "isolateGetCurrentContext": "_ZN2v87Isolate17GetCurrentContextEv",
    "handleScopeInit": "_ZN2v811HandleScopeC1EPNS_7IsolateE",
    "handleScopeDestroy": "_ZN2v811HandleScopeD1Ev",
    "stringNewFromUtf8": "_ZN2v86String11NewFromUtf8EPNS_7IsolateEPKcNS_13NewStringTypeEi",
    "scriptCompile": "_ZN2v86Script7CompileENS_5LocalINS_7ContextEEENS1_INS_6StringEEEPNS_12ScriptOriginE",
    "scriptRun": "_ZN2v86Script3RunENS_5LocalINS_7ContextEEE",
}

# libuv functions that node calls from bindings while a context is entered.
ENTRY_HOOKS = ("uv_now", "uv_hrtime", "uv_update_time")

_WRAPPER_TEMPLATE = """\
(function () {
  'use strict';

  const code = %(code)s;
  const symbols = %(symbols)s;
  const entryHooks = %(hooks)s;

  function findExport(name) {
    if (typeof Module.findGlobalExportByName === 'function') {
      return Module.findGlobalExportByName(name);
    }
    return Module.findExportByName(null, name);
  }

  function resolve(name) {
    let address = findExport(name);
    if (address === null) {
      const symbol = DebugSymbol.fromName(name);
      address = symbol === null ? null : symbol.address;
    }
    if (address === null || address.isNull()) {
      throw new Error('Unable to locate ' + name + ' in the target');
    }
    return address;
  }

  const v8 = {
    isolateGetCurrent: new NativeFunction(resolve(symbols.isolateGetCurrent), 'pointer', []),
    isolateGetCurrentContext: new NativeFunction(resolve(symbols.isolateGetCurrentContext), 'pointer', ['pointer']),
    handleScopeInit: new NativeFunction(resolve(symbols.handleScopeInit), 'void', ['pointer', 'pointer']),
    handleScopeDestroy: new NativeFunction(resolve(symbols.handleScopeDestroy), 'void', ['pointer']),
    stringNewFromUtf8: new NativeFunction(resolve(symbols.stringNewFromUtf8), 'pointer', ['pointer', 'pointer', 'int', 'int']),
    scriptCompile: new NativeFunction(resolve(symbols.scriptCompile), 'pointer', ['pointer', 'pointer', 'pointer']),
    scriptRun: new NativeFunction(resolve(symbols.scriptRun), 'pointer', ['pointer', 'pointer']),
  };

  const source = Memory.allocUtf8String(code);
  const listeners = [];
  let done = false;

  function runInTargetContext() {
    const isolate = v8.isolateGetCurrent();
    if (isolate.isNull()) {
      return false;
    }
    const scope = Memory.alloc(8 * Process.pointerSize);
    v8.handleScopeInit(scope, isolate);
    try {
      const context = v8.isolateGetCurrentContext(isolate);
      if (context.isNull()) {
        return false;
      }
      const text = v8.stringNewFromUtf8(isolate, source, 0, -1);
      if (text.isNull()) {
        throw new Error('Unable to allocate the injected source in the target isolate');
      }
      const compiled = v8.scriptCompile(context, text, NULL);
      if (compiled.isNull()) {
        throw new Error('Injected code failed to compile in the target context');
      }
      v8.scriptRun(compiled, context);
      return true;
    } finally {
      v8.handleScopeDestroy(scope);
    }
  }

  function hook(name) {
    const address = findExport(name);
    if (address === null) {
      return;
    }
    listeners.push(Interceptor.attach(address, {
      onEnter() {
        if (done) {
          return;
        }
        if (runInTargetContext()) {
          done = true;
          setImmediate(function () {
            listeners.forEach(function (listener) { listener.detach(); });
          });
        }
      }
    }));
  }

  entryHooks.forEach(hook);
  if (listeners.length === 0) {
    throw new Error('No usable entry point found: is the target a Node.js process?');
  }
})();
"""


def build_direct_script(source: str) -> str:
    return source


def build_managed_runtime_wrapper(code_text: str) -> str:
    """Wrap ``code_text`` so it runs inside the target's own JavaScript context.

    The generated script resolves the V8 isolate and its entered context
    through exported symbols, waits on the node thread until a context is
    entered (a libuv call made from a binding), then compiles and runs the
    code there.  The code therefore sees the target's ``process``,
    ``require`` and ``console`` rather than the instrumentation sandbox.
    """

    if not isinstance(code_text, str):
        raise TypeError(f"code_text must be str, not {type(code_text).__name__}")
    return _WRAPPER_TEMPLATE % {
        "code": json.dumps(code_text),
        "symbols": json.dumps(V8_SYMBOLS, indent=2, sort_keys=True).replace("\n", "\n  "),
        "hooks": json.dumps(list(ENTRY_HOOKS)),
    }
