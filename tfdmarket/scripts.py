"""Scripts injected into the market page.

This is the only module that knows the page's selectors. The parse pass
returns plain text snapshots of each listing; turning those into records is
left to :mod:`tfdmarket.extractors`.
"""

from __future__ import annotations

import json

MODULE_TYPE_DROPDOWN = "moduletype"
PLATFORM_DROPDOWN = "platform"


def wrap_async(script: str) -> str:
    """Adapt an expression (possibly a promise) to Selenium's async callback."""
    return (
        "const __done = arguments[arguments.length - 1];\n"
        f"Promise.resolve({script})"
        ".then(r => __done(r === undefined ? null : r), e => __done({__error: String(e && e.message || e)}));"
    )


def select_dropdown_option(dropdown: str, option_text: str) -> str:
    return f"""(async () => {{
      const wanted = {json.dumps((option_text or "").lower())};
      const sleep = (ms) => new Promise(r => setTimeout(r, ms));
      const btn = document.querySelector('div[data-name="{dropdown}"] .dropdown__button');
      if (!btn) return false;
      btn.click();
      await sleep(200);
      const options = Array.from(document.querySelectorAll('div[data-name="{dropdown}"] li'));
      const target = options.find(li => li.textContent && li.textContent.toLowerCase().includes(wanted));
      if (target) target.click();
      return Boolean(target);
    }})()"""


def enter_search_text(query: str) -> str:
    return f"""(async () => {{
      const query = {json.dumps(query or "")};
      const sleep = (ms) => new Promise(r => setTimeout(r, ms));
      let input = null;
      for (let i = 0; i < 50; i++) {{
        input = document.querySelector('#search__input');
        if (input) break;
        await sleep(200);
      }}
      if (!input) return false;
      input.focus();
      input.value = '';
      input.dispatchEvent(new Event('input', {{ bubbles: true }}));
      input.value = query;
      input.dispatchEvent(new Event('input', {{ bubbles: true }}));
      input.dispatchEvent(new KeyboardEvent('keydown', {{ key: 'Enter', code: 'Enter', keyCode: 13, bubbles: true }}));
      input.dispatchEvent(new KeyboardEvent('keyup', {{ key: 'Enter', code: 'Enter', keyCode: 13, bubbles: true }}));
      const btn = document.querySelector('.search__btn');
      if (btn) btn.click();
      return true;
    }})()"""


PARSE_LISTINGS = """(() => {
  const text = (root, sel) => {
    const el = root.querySelector(sel);
    return el ? el.textContent.trim() : '';
  };
  const snapshot = (item) => {
    const nick = item.querySelector('.seller .nickname');
    let nodes = '';
    let status = '';
    if (nick) {
      nick.childNodes.forEach(node => {
        if (node.nodeType === Node.TEXT_NODE) nodes += node.textContent;
      });
      const state = nick.querySelector('i');
      if (state) status = state.textContent.trim();
    }
    const options = Array.from(item.querySelectorAll('.item__details .option')).map(opt => ({
      name: text(opt, '.option-name'),
      value: text(opt, '.option-value'),
    }));
    return {
      type: text(item, '.row-wrapper .type'),
      name: text(item, '.row-wrapper .name'),
      module_name: text(item, '.module-name'),
      socket_type: text(item, '.ancestor-info .socket-type'),
      info_socket_type: text(item, '.item__info .socket-type'),
      required_rank: text(item, '.ancestor-info .required-rank span') || text(item, '.item__info .required-rank span'),
      required_mastery_rank: text(item, '.item__info .required-mastery-rank span'),
      platform: text(item, '.seller .platform'),
      reroll: text(item, '.seller .reroll span'),
      seller_name_nodes: nodes,
      seller_name_text: nick ? nick.textContent : '',
      seller_status: status,
      seller_rank: text(item, '.seller .rank span'),
      price: text(item, '.price'),
      options: options,
      reg_date: text(item, '.information .date span'),
    };
  };
  const items = Array.from(document.querySelectorAll('.items .item'));
  const loader = document.querySelector('[class*="loader"], [class*="loading"], [class*="spinner"]');
  return JSON.stringify({
    items: items.map(snapshot),
    itemCount: items.length,
    loaderVisible: Boolean(loader && loader.offsetParent !== null),
  });
})()"""


SCROLL_TO_BOTTOM = """
window.scrollTo(0, document.body.scrollHeight);
const container = document.querySelector('div.items');
if (container) container.scrollTo(0, container.scrollHeight);
"""
