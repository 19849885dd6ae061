#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Services

变量服务：指令解析、宏替换、条件求值与AI响应处理
"""
